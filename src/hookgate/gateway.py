"""Gateway facade.

Wires configuration, bundles, drivers, stores and the pipeline together and
routes requests by listen path:

    request ─► match listen path ─► strip ─► pipeline ─► upstream
                                                 │
                                                 └─► override / rejection response

A hook may point a request at another API by setting its URL to
``loop://<api-name>/<path>``; the request then runs through that API's
pipeline instead of going upstream.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlsplit

from hookgate.bundle import Bundle, load_bundle
from hookgate.config import ApiDefinition, HookGateConfig, get_config
from hookgate.drivers import Driver, create_driver
from hookgate.exceptions import ManifestError
from hookgate.models import LiveRequest, Response
from hookgate.pipeline.orchestrator import PipelineOrchestrator, RouteFn, error_response
from hookgate.stores import InMemoryPolicyStore, InMemorySessionStore, PolicyStore, SessionStore

logger = logging.getLogger(__name__)

Upstream = Callable[[LiveRequest], Response]

LOOP_SCHEME = "loop://"
MAX_LOOPS = 8


@dataclass
class LoadedApi:
    definition: ApiDefinition
    bundle: Bundle | None
    pipeline: PipelineOrchestrator


def build_router(api: ApiDefinition) -> RouteFn | None:
    """Routing function applying an API's URL rewrite and method transform rules.

    Rules match on the request as it arrives at the router (exact path and
    method), so a rewrite never prevents a transform declared for the same
    original path from applying.
    """
    if not api.url_rewrites and not api.method_transforms:
        return None

    def route(live: LiveRequest) -> None:
        path, method = live.path, live.method.upper()
        rewrite = next((r for r in api.url_rewrites if r.path == path and r.method.upper() == method), None)
        transform = next((t for t in api.method_transforms if t.path == path and t.method.upper() == method), None)
        if rewrite is not None:
            _, _, query = live.url.partition("?")
            live.url = rewrite.rewrite_to
            if query and "?" not in rewrite.rewrite_to:
                live.url = f"{live.url}?{query}"
            logger.debug("Rewrote %s %s to %s", method, path, live.url)
        if transform is not None:
            live.method = transform.to_method.upper()
            logger.debug("Transformed %s %s to %s", method, path, live.method)

    return route


def _strip_listen_path(url: str, listen_path: str) -> str:
    prefix = listen_path.rstrip("/")
    stripped = url[len(prefix) :]
    if not stripped.startswith("/"):
        stripped = "/" + stripped
    return stripped


class Gateway:
    """Serves the configured APIs.

    Args:
        config: Gateway configuration (defaults to the global instance)
        upstream: Receives every request that completes the pipeline
        session_store: Session store (in-memory by default)
        policy_store: Policy store (in-memory, seeded from config, by default)
    """

    def __init__(
        self,
        config: HookGateConfig | None = None,
        upstream: Upstream | None = None,
        session_store: SessionStore | None = None,
        policy_store: PolicyStore | None = None,
    ) -> None:
        self.config = config or get_config()
        self.upstream = upstream or (lambda request: error_response(502, "No upstream configured"))
        self.session_store = session_store or InMemorySessionStore()
        self.policy_store = policy_store or InMemoryPolicyStore(self.config.policies)

        self._drivers: dict[str, Driver] = {}
        self._apis: dict[str, LoadedApi] = {}
        self._lock = threading.Lock()

    def _driver(self, name: str) -> Driver:
        driver = self._drivers.get(name)
        if driver is None:
            driver = create_driver(name, self.config.coprocess)
            self._drivers[name] = driver
        return driver

    def _load_api(self, api: ApiDefinition) -> LoadedApi:
        bundle = None
        driver = None
        if api.custom_middleware_bundle:
            if not self.config.coprocess.enabled:
                raise ManifestError(api.custom_middleware_bundle, "coprocess support is disabled")
            bundle_dir = self.config.coprocess.bundle_path / api.custom_middleware_bundle
            bundle = load_bundle(bundle_dir, bundle_id=api.custom_middleware_bundle)
            driver = self._driver(bundle.driver)
            driver.bind(bundle)

        pipeline = PipelineOrchestrator(
            api=api,
            bundle=bundle,
            driver=driver,
            session_store=self.session_store,
            policy_store=self.policy_store,
            hook_timeout=self.config.coprocess.hook_timeout,
            route=build_router(api),
        )
        return LoadedApi(definition=api, bundle=bundle, pipeline=pipeline)

    def load_apis(self, apis: list[ApiDefinition] | None = None) -> list[str]:
        """Load (or reload) API definitions.

        An API whose bundle fails to load stays out of service; the others
        are loaded regardless.

        Args:
            apis: Definitions to serve (defaults to the configured ones)

        Returns:
            Names of the APIs now in service
        """
        loaded: dict[str, LoadedApi] = {}
        for api in self.config.apis if apis is None else apis:
            try:
                loaded[api.listen_path] = self._load_api(api)
            except ManifestError as e:
                logger.error(
                    "API '%s' not loaded: %s",
                    api.name,
                    e,
                    extra={"event": "api_load_failed", "bundle": api.custom_middleware_bundle},
                )

        with self._lock:
            previous, self._apis = self._apis, loaded

        kept = {entry.bundle.id for entry in loaded.values() if entry.bundle is not None}
        for old in previous.values():
            if old.bundle is not None and old.bundle.id not in kept:
                self._drivers[old.bundle.driver].unbind(old.bundle.id)

        names = [entry.definition.name for entry in loaded.values()]
        logger.info("Serving %d APIs: %s", len(names), ", ".join(names))
        return names

    def _match(self, path: str) -> LoadedApi | None:
        with self._lock:
            candidates = list(self._apis.values())
        best = None
        for entry in candidates:
            listen_path = entry.definition.listen_path
            if path.startswith(listen_path) or path == listen_path.rstrip("/"):
                if best is None or len(listen_path) > len(best.definition.listen_path):
                    best = entry
        return best

    def _by_name(self, name: str) -> LoadedApi | None:
        with self._lock:
            return next((entry for entry in self._apis.values() if entry.definition.name == name), None)

    def handle(self, request: LiveRequest, cancel: threading.Event | None = None) -> Response:
        """Serve one request.

        Args:
            request: Inbound request with the full path in ``url``
            cancel: Set to abandon pending hook calls

        Returns:
            Response from upstream, a hook override, or a rejection
        """
        if not request.raw_url:
            request.raw_url = request.url
        entry = self._match(request.path)
        if entry is None:
            return error_response(404, "Not found")
        if entry.definition.strip_listen_path:
            request.url = _strip_listen_path(request.url, entry.definition.listen_path)
        return self._run(entry, request, cancel, loops=0)

    def _run(self, entry: LoadedApi, request: LiveRequest, cancel: threading.Event | None, loops: int) -> Response:
        result = entry.pipeline.run(request, cancel)
        if result.response is not None:
            return result.response

        if not result.request.url.startswith(LOOP_SCHEME):
            return self.upstream(result.request)

        if loops >= MAX_LOOPS:
            return error_response(500, "Loop limit reached")
        target = urlsplit(result.request.url)
        looped = self._by_name(target.netloc)
        if looped is None:
            logger.warning("Loop target API '%s' not found", target.netloc)
            return error_response(404, "Not found")
        result.request.url = (target.path or "/") + (f"?{target.query}" if target.query else "")
        return self._run(looped, result.request, cancel, loops + 1)

    def close(self) -> None:
        for driver in self._drivers.values():
            driver.close()
        self._drivers.clear()
        with self._lock:
            self._apis.clear()

    def __enter__(self) -> Gateway:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
