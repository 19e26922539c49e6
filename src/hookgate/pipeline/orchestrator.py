"""Pipeline orchestrator.

Sequences the hook stages for one request as a state machine:

    PRE ──► AUTH ──────► POST_AUTH ──► POST ──► PROXY
     │                        ▲
     ├── (built-in auth) ─────┘
     └── (keyless) ──────────────────► POST

Any stage may end in OVERRIDE (a hook asked for a synthetic response) or
REJECTED (authentication failed or a hook errored). PROXY, OVERRIDE and
REJECTED are terminal; only PROXY forwards the request upstream.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from hookgate.bundle import Bundle, Stage
from hookgate.config import ApiDefinition
from hookgate.drivers.base import Driver, HookCall, HookResult
from hookgate.exceptions import AuthRejected, HookExecutionError, ManifestError, PolicyNotFoundError
from hookgate.models import LiveRequest, Response
from hookgate.objects import ReturnOverrides, SessionObject
from hookgate.pipeline.codec import decode_request, decode_session, encode_request, encode_session
from hookgate.pipeline.overrides import check_override, render_override
from hookgate.stores import PolicyStore, SessionState, SessionStore, apply_policy

logger = logging.getLogger(__name__)

# Applies pre-computed routing decisions (URL rewrite, method transform)
RouteFn = Callable[[LiveRequest], None]


class PipelineState(Enum):
    PRE = "pre"
    AUTH = "auth"
    POST_AUTH = "post_auth"
    POST = "post"
    PROXY = "proxy"
    OVERRIDE = "override"
    REJECTED = "rejected"


TERMINAL_STATES = frozenset({PipelineState.PROXY, PipelineState.OVERRIDE, PipelineState.REJECTED})


class TerminationReason(Enum):
    NONE = "none"
    OVERRIDE = "override"
    AUTH_REJECTED = "auth-rejected"
    HOOK_ERROR = "hook-error"


@dataclass
class PipelineResult:
    """Outcome of one pipeline execution.

    Attributes:
        request: The live request with every hook mutation applied
        session: Session after the last stage, None when no session was resolved
        session_key: Key the session is stored under
        state: Terminal state reached
        termination_reason: Why the pipeline stopped before PROXY, if it did
        response: Response to send instead of proxying (None on PROXY)
    """

    request: LiveRequest
    session: SessionState | None
    session_key: str | None
    state: PipelineState
    termination_reason: TerminationReason = TerminationReason.NONE
    response: Response | None = None

    @property
    def terminated(self) -> bool:
        return self.termination_reason is not TerminationReason.NONE


@dataclass
class _Execution:
    """Mutable state of one pipeline run, owned by the request's thread."""

    live: LiveRequest
    cancel: threading.Event | None
    session: SessionObject = field(default_factory=SessionObject)
    session_state: SessionState | None = None
    session_key: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    override: ReturnOverrides | None = None
    reason: TerminationReason = TerminationReason.NONE
    response: Response | None = None


def error_response(status_code: int, message: str) -> Response:
    body = json.dumps({"error": message}).encode("utf-8")
    return Response(
        status_code=status_code,
        body=body,
        headers={"Content-Type": "application/json", "Content-Length": str(len(body))},
    )


class PipelineOrchestrator:
    """Runs a bundle's hooks for one API.

    One orchestrator serves every request of an API; all per-request state
    lives in the execution object created by ``run``.

    Args:
        api: API definition deciding which stages apply
        bundle: Bundle with the hook bindings (None for an API without hooks)
        driver: Driver bound to the bundle
        session_store: Where authorized sessions are read and persisted
        policy_store: Resolves ``apply_policy_id``
        hook_timeout: Seconds each hook call may take
        route: Applies URL rewrite / method transform decisions before POST
    """

    def __init__(
        self,
        api: ApiDefinition,
        bundle: Bundle | None,
        driver: Driver | None,
        session_store: SessionStore,
        policy_store: PolicyStore,
        hook_timeout: float = 5.0,
        route: RouteFn | None = None,
    ) -> None:
        if bundle is not None and driver is None:
            raise ValueError(f"Bundle '{bundle.id}' has no driver")
        if api.requires_auth and api.enable_coprocess_auth and (bundle is None or bundle.auth_hook is None):
            raise ManifestError(
                str(bundle.base_dir) if bundle else api.custom_middleware_bundle or api.name,
                f"API '{api.name}' enables coprocess auth but the bundle binds no auth_check hook",
            )
        self.api = api
        self.bundle = bundle
        self.driver = driver
        self.session_store = session_store
        self.policy_store = policy_store
        self.hook_timeout = hook_timeout
        self.route = route

        self._handlers: dict[PipelineState, Callable[[_Execution], PipelineState]] = {
            PipelineState.PRE: self._pre,
            PipelineState.AUTH: self._auth,
            PipelineState.POST_AUTH: self._post_auth,
            PipelineState.POST: self._post,
        }
        self._spec = {
            "api_name": api.name,
            "listen_path": api.listen_path,
            "bundle_id": bundle.id if bundle else "",
        }

    def run(self, live: LiveRequest, cancel: threading.Event | None = None) -> PipelineResult:
        """Execute the pipeline for one request.

        Request-time errors never escape: they end in a REJECTED result
        carrying the response to send.

        Args:
            live: Request to process, mutated in place by hooks
            cancel: Set when the client goes away to abandon pending hook calls

        Returns:
            PipelineResult; ``response`` is None only when state is PROXY
        """
        execution = _Execution(live=live, cancel=cancel)
        state = PipelineState.PRE

        while state not in TERMINAL_STATES:
            logger.debug("Pipeline %s: entering %s", self.api.name, state.value)
            try:
                state = self._handlers[state](execution)
            except AuthRejected as e:
                state = self._reject(execution, e.status_code, e.reason, TerminationReason.AUTH_REJECTED)
            except HookExecutionError as e:
                logger.error(
                    "Hook '%s' failed in %s stage: %s",
                    e.hook_name,
                    e.stage,
                    e.detail,
                    extra={"event": "hook_error", "driver": e.driver, "api": self.api.name},
                )
                state = self._reject(
                    execution, 500, "There was a problem proxying the request", TerminationReason.HOOK_ERROR
                )

        if state is PipelineState.OVERRIDE and execution.override is not None:
            execution.response = render_override(execution.override)
            execution.reason = TerminationReason.OVERRIDE

        return PipelineResult(
            request=execution.live,
            session=self._final_session(execution),
            session_key=execution.session_key,
            state=state,
            termination_reason=execution.reason,
            response=execution.response,
        )

    # State handlers

    def _pre(self, execution: _Execution) -> PipelineState:
        if self._run_hooks(execution, Stage.PRE):
            return PipelineState.OVERRIDE
        if not self.api.requires_auth:
            return PipelineState.POST
        if self.api.enable_coprocess_auth:
            return PipelineState.AUTH
        self._authenticate_key(execution)
        return PipelineState.POST_AUTH

    def _auth(self, execution: _Execution) -> PipelineState:
        assert self.bundle is not None and self.bundle.auth_hook is not None
        binding = self.bundle.auth_hook

        try:
            result = self._invoke(execution, Stage.AUTH, binding.name, SessionObject())
        except HookExecutionError as e:
            # An auth hook that did not complete never authorizes
            logger.warning(
                "Auth hook '%s' failed, rejecting request: %s",
                binding.name,
                e.detail,
                extra={"event": "auth_hook_error", "driver": e.driver, "api": self.api.name},
            )
            raise AuthRejected("Key not authorised") from e

        self._apply_result(execution, result)
        if check_override(result.request) is not None:
            execution.override = result.request.return_overrides
            return PipelineState.OVERRIDE

        returned = result.session
        state = decode_session(returned)
        if returned.apply_policy_id:
            try:
                apply_policy(state, self.policy_store.resolve(returned.apply_policy_id))
            except PolicyNotFoundError as e:
                logger.warning("Auth hook applied unknown policy '%s'", e.policy_id)
                raise AuthRejected("Key not authorised") from e
        elif not returned.has_limits():
            logger.info("Auth hook '%s' did not authorize the request", binding.name)
            raise AuthRejected("Key not authorised")

        key = str(execution.metadata.get("token") or execution.live.get_header("Authorization"))
        if not key:
            raise AuthRejected("Key not authorised")

        # The metadata side-map becomes part of the stored session
        state.meta_data.update(execution.metadata)
        self.session_store.merge(key, state)
        self._start_session(execution, key)
        return PipelineState.POST_AUTH

    def _post_auth(self, execution: _Execution) -> PipelineState:
        if self._run_hooks(execution, Stage.POST_KEY_AUTH):
            return PipelineState.OVERRIDE
        return PipelineState.POST

    def _post(self, execution: _Execution) -> PipelineState:
        if self.route is not None:
            self.route(execution.live)
        if self._run_hooks(execution, Stage.POST):
            return PipelineState.OVERRIDE
        return PipelineState.PROXY

    # Helpers

    def _authenticate_key(self, execution: _Execution) -> None:
        """Built-in authentication: the Authorization header is the session key."""
        key = execution.live.get_header("Authorization").strip()
        if not key:
            raise AuthRejected("Authorization field missing", status_code=401)
        if self.session_store.get(key) is None:
            raise AuthRejected("Access to this API has been disallowed")
        self._start_session(execution, key)

    def _start_session(self, execution: _Execution, key: str) -> None:
        if not self.session_store.consume_quota(key):
            raise AuthRejected("Quota exceeded")
        stored = self.session_store.get(key)
        execution.session_key = key
        execution.session_state = stored
        execution.session = encode_session(stored)

    def _invoke(self, execution: _Execution, stage: Stage, hook_name: str, session: SessionObject) -> HookResult:
        assert self.bundle is not None and self.driver is not None
        call = HookCall(
            bundle=self.bundle,
            stage=stage,
            hook_name=hook_name,
            request=encode_request(execution.live, stage, hook_name),
            session=session,
            metadata=dict(execution.metadata),
            spec=self._spec,
        )
        return self.driver.invoke(call, self.hook_timeout, execution.cancel)

    def _apply_result(self, execution: _Execution, result: HookResult) -> None:
        decode_request(result.request, execution.live)
        execution.session = result.session
        execution.metadata = result.metadata

    def _run_hooks(self, execution: _Execution, stage: Stage) -> bool:
        """Run a stage's hooks in order, chaining their outputs.

        Returns:
            True if a hook requested an override (remaining hooks are skipped)
        """
        if self.bundle is None:
            return False
        for binding in self.bundle.hooks_for(stage):
            result = self._invoke(execution, stage, binding.name, execution.session)
            self._apply_result(execution, result)
            if check_override(result.request) is not None:
                logger.debug("Hook '%s' returned an override in %s stage", binding.name, stage.value)
                execution.override = result.request.return_overrides
                return True
        return False

    def _reject(
        self, execution: _Execution, status_code: int, message: str, reason: TerminationReason
    ) -> PipelineState:
        logger.info(
            "Request rejected with %d: %s",
            status_code,
            message,
            extra={"event": "request_rejected", "api": self.api.name, "reason": reason.value},
        )
        execution.response = error_response(status_code, message)
        execution.reason = reason
        return PipelineState.REJECTED

    @staticmethod
    def _final_session(execution: _Execution) -> SessionState | None:
        if execution.session_state is None:
            return None
        return decode_session(execution.session, execution.session_state)
