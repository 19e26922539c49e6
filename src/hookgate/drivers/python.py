"""Python driver: hooks run in a pool of worker subprocesses.

Each worker is a separate interpreter running ``hookgate.runtime.worker`` and
speaking newline-delimited JSON over its stdin/stdout. A worker serves one call
at a time. Workers that time out, get cancelled or die mid-call are killed and
replaced rather than reused, since their state is unknown.
"""

from __future__ import annotations

import ast
import json
import logging
import os
import queue
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import hookgate
from hookgate.bundle import Bundle
from hookgate.drivers.base import POLL_INTERVAL, Driver, HookCall, HookResult, register_driver
from hookgate.drivers.pool import AcquireCancelled, WorkerPool
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

WORKER_MODULE = "hookgate.runtime.worker"


class WorkerGone(Exception):
    """The worker process exited or its pipe broke."""


class CallCancelled(Exception):
    """The caller cancelled while waiting for a reply."""


class WorkerProcess:
    """A single runtime subprocess and its reply reader."""

    def __init__(self, argv: list[str], env: dict[str, str]) -> None:
        self.process = subprocess.Popen(  # noqa: S603
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            env=env,
            text=True,
            encoding="utf-8",
            bufsize=1,
        )
        self.broken = False
        # Bundle ids to evict before the next call, guarded by the driver
        self.pending_unloads: set[str] = set()
        self._next_id = 0
        self._replies: queue.Queue[dict[str, Any] | None] = queue.Queue()
        self._reader = threading.Thread(
            target=self._read_replies,
            name=f"hookgate-worker-{self.process.pid}",
            daemon=True,
        )
        self._reader.start()

    def _read_replies(self) -> None:
        assert self.process.stdout is not None
        for line in self.process.stdout:
            line = line.strip()
            if not line:
                continue
            try:
                self._replies.put(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Discarding malformed line from worker %d: %.100s", self.process.pid, line)
        # EOF
        self._replies.put(None)

    @property
    def healthy(self) -> bool:
        return not self.broken and self.process.poll() is None

    def call(self, message: dict[str, Any], deadline: float, cancel: threading.Event | None = None) -> dict[str, Any]:
        """Send one message and wait for the matching reply.

        Raises:
            TimeoutError: If no reply arrived before ``deadline``
            CallCancelled: If ``cancel`` was set while waiting
            WorkerGone: If the worker exited or the pipe broke
        """
        self._next_id += 1
        message_id = self._next_id
        payload = json.dumps({**message, "id": message_id})

        assert self.process.stdin is not None
        try:
            self.process.stdin.write(payload + "\n")
            self.process.stdin.flush()
        except (BrokenPipeError, OSError) as e:
            self.broken = True
            raise WorkerGone(str(e)) from e

        while True:
            if cancel is not None and cancel.is_set():
                self.broken = True
                raise CallCancelled()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.broken = True
                raise TimeoutError()
            try:
                reply = self._replies.get(timeout=min(remaining, POLL_INTERVAL))
            except queue.Empty:
                continue
            if reply is None:
                self.broken = True
                raise WorkerGone(f"worker exited with code {self.process.poll()}")
            if reply.get("id") == message_id:
                return reply

    def stop(self) -> None:
        if self.process.poll() is not None:
            return
        try:
            if self.process.stdin is not None:
                self.process.stdin.close()
        except OSError:
            pass
        self.process.terminate()
        try:
            self.process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            self.process.kill()
            self.process.wait()


def scan_hook_names(path: Path) -> set[str]:
    """Top-level callables defined in a Python source file, without importing it."""
    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    names: set[str] = set()
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(node.name)
        elif isinstance(node, ast.Assign):
            names.update(t.id for t in node.targets if isinstance(t, ast.Name))
    return names


@register_driver("python")
class PythonDriver(Driver):
    """Runs hooks in worker subprocesses of a Python interpreter."""

    def __init__(self, config: CoProcessConfig) -> None:
        super().__init__(config)
        self._pool: WorkerPool[WorkerProcess] = WorkerPool(
            name="python",
            factory=self._spawn,
            max_size=config.pool_size,
            is_healthy=lambda w: w.healthy,
            dispose=self._dispose,
        )
        self._workers_lock = threading.Lock()
        self._workers: set[WorkerProcess] = set()

    def _worker_env(self) -> dict[str, str]:
        env = os.environ.copy()
        # The worker must be able to import hookgate itself
        package_root = str(Path(hookgate.__file__).resolve().parent.parent)
        entries = [*self.config.python_path, package_root]
        if env.get("PYTHONPATH"):
            entries.append(env["PYTHONPATH"])
        env["PYTHONPATH"] = os.pathsep.join(entries)
        env["PYTHONUNBUFFERED"] = "1"
        return env

    def _spawn(self) -> WorkerProcess:
        executable = self.config.python_executable or sys.executable
        worker = WorkerProcess([executable, "-m", WORKER_MODULE], self._worker_env())
        logger.debug("Started python worker pid=%d", worker.process.pid)
        with self._workers_lock:
            self._workers.add(worker)
        return worker

    def _dispose(self, worker: WorkerProcess) -> None:
        with self._workers_lock:
            self._workers.discard(worker)
        worker.stop()

    def unbind(self, bundle_id: str) -> None:
        """Have every worker drop the bundle's modules before its next call."""
        with self._workers_lock:
            for worker in self._workers:
                worker.pending_unloads.add(bundle_id)
        logger.info("Unbound bundle '%s' from driver '%s'", bundle_id, self.name)

    def _flush_unloads(self, worker: WorkerProcess, deadline: float, cancel: threading.Event | None) -> None:
        with self._workers_lock:
            bundle_ids = sorted(worker.pending_unloads)
            worker.pending_unloads.clear()
        if bundle_ids:
            worker.call({"op": "unload", "bundles": bundle_ids}, deadline, cancel)

    def available_hooks(self, bundle: Bundle) -> set[str]:
        names: set[str] = set()
        for path in bundle.paths:
            if path.suffix != ".py":
                continue
            try:
                names |= scan_hook_names(path)
            except (OSError, SyntaxError, UnicodeDecodeError) as e:
                raise ManifestError(str(bundle.base_dir), f"cannot parse {path.name}: {e}") from e
        return names

    def invoke(self, call: HookCall, timeout: float, cancel: threading.Event | None = None) -> HookResult:
        deadline = time.monotonic() + timeout
        message = {"op": "call", **call.to_wire()}
        stage = call.stage.value

        try:
            with self._pool.lease(timeout=min(self.config.acquire_timeout, timeout), cancel=cancel) as worker:
                self._flush_unloads(worker, deadline, cancel)
                reply = worker.call(message, deadline, cancel)
        except (AcquireCancelled, CallCancelled) as e:
            raise HookCancelledError(self.name, stage, call.hook_name) from e
        except TimeoutError as e:
            if time.monotonic() >= deadline:
                raise HookTimeoutError(self.name, stage, call.hook_name, timeout) from e
            raise RuntimeUnavailableError(self.name, stage, call.hook_name, "no free worker") from e
        except WorkerGone as e:
            raise RuntimeUnavailableError(self.name, stage, call.hook_name, str(e)) from e
        except OSError as e:
            raise RuntimeUnavailableError(self.name, stage, call.hook_name, f"cannot start worker: {e}") from e

        if not reply.get("ok"):
            error = reply.get("error") or {}
            if error.get("kind") == "not_found":
                raise HookNotFoundError(self.name, stage, call.hook_name)
            raise HookFaultError(self.name, stage, call.hook_name, error.get("message") or "unknown error")

        try:
            return HookResult.from_wire(reply)
        except (ValueError, TypeError) as e:
            raise HookFaultError(self.name, stage, call.hook_name, f"invalid reply: {e}") from e

    def close(self) -> None:
        self._pool.close()

    @property
    def pool(self) -> WorkerPool[WorkerProcess]:
        return self._pool
