"""HTTP driver: hooks run in a remote runtime reached over HTTP.

Wire contract with the runtime:
    GET  /bundles/{bundle_id}/hooks           -> {"hooks": ["MyAuthHook", ...]}
    POST /bundles/{bundle_id}/hooks/{name}    <- HookCall.to_wire()
                                              -> {"request": ..., "session": ..., "metadata": ...}

A 404 on the POST means the hook no longer exists; any other non-2xx status is
an application fault.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import TYPE_CHECKING

import httpx

from hookgate.bundle import Bundle
from hookgate.drivers.base import POLL_INTERVAL, Driver, HookCall, HookResult, register_driver
from hookgate.exceptions import (
    HookCancelledError,
    HookFaultError,
    HookNotFoundError,
    HookTimeoutError,
    ManifestError,
    RuntimeUnavailableError,
)

if TYPE_CHECKING:
    from hookgate.config import CoProcessConfig

logger = logging.getLogger(__name__)


@register_driver("http")
class HttpDriver(Driver):
    """Runs hooks through a remote HTTP runtime."""

    def __init__(self, config: CoProcessConfig, client: httpx.Client | None = None) -> None:
        super().__init__(config)
        self._client = client or httpx.Client(
            base_url=config.http_runtime_url,
            limits=httpx.Limits(max_connections=config.pool_size),
        )
        # Calls run on this executor so the request thread can abandon them
        self._executor = ThreadPoolExecutor(max_workers=config.pool_size, thread_name_prefix="hookgate-http")

    def available_hooks(self, bundle: Bundle) -> set[str]:
        try:
            response = self._client.get(f"/bundles/{bundle.id}/hooks", timeout=self.config.hook_timeout)
            response.raise_for_status()
            hooks = response.json().get("hooks", [])
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            raise ManifestError(str(bundle.base_dir), f"cannot list hooks from http runtime: {e}") from e
        return {str(name) for name in hooks}

    def _post(self, call: HookCall, timeout: float) -> httpx.Response:
        return self._client.post(
            f"/bundles/{call.bundle.id}/hooks/{call.hook_name}",
            json=call.to_wire(),
            timeout=timeout,
        )

    def _wait(
        self,
        future: Future[httpx.Response],
        call: HookCall,
        timeout: float,
        cancel: threading.Event | None,
    ) -> httpx.Response:
        deadline = time.monotonic() + timeout
        stage = call.stage.value
        while True:
            if cancel is not None and cancel.is_set():
                future.cancel()
                raise HookCancelledError(self.name, stage, call.hook_name)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                raise HookTimeoutError(self.name, stage, call.hook_name, timeout)
            try:
                return future.result(timeout=min(remaining, POLL_INTERVAL))
            except FutureTimeout:
                continue
            except httpx.TimeoutException as e:
                raise HookTimeoutError(self.name, stage, call.hook_name, timeout) from e
            except httpx.HTTPError as e:
                raise RuntimeUnavailableError(self.name, stage, call.hook_name, str(e)) from e

    def invoke(self, call: HookCall, timeout: float, cancel: threading.Event | None = None) -> HookResult:
        stage = call.stage.value
        try:
            future = self._executor.submit(self._post, call, timeout)
        except RuntimeError as e:
            raise RuntimeUnavailableError(self.name, stage, call.hook_name, str(e)) from e
        response = self._wait(future, call, timeout, cancel)

        if response.status_code == 404:
            raise HookNotFoundError(self.name, stage, call.hook_name)
        if response.is_error:
            logger.warning(
                "HTTP runtime returned %d for hook '%s'",
                response.status_code,
                call.hook_name,
                extra={"event": "hook_fault", "driver": self.name, "status_code": response.status_code},
            )
            detail = f"runtime returned {response.status_code}: {response.text[:200]}"
            raise HookFaultError(self.name, stage, call.hook_name, detail)

        try:
            return HookResult.from_wire(response.json())
        except (ValueError, TypeError, AttributeError) as e:
            raise HookFaultError(self.name, stage, call.hook_name, f"invalid reply: {e}") from e

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._client.close()
