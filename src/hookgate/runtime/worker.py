"""Python driver worker process.

Reads one JSON message per line on stdin and writes one JSON reply per line
on stdout. Messages:

    {"id": 1, "op": "ping"}
    {"id": 2, "op": "call", "bundle": {...}, "stage": "auth", "hook": "MyAuthHook",
     "request": {...}, "session": {...}, "metadata": {...}, "spec": {...}}
    {"id": 3, "op": "unload", "bundles": ["bundle-id", ...]}

Replies carry the same id plus either ``"ok": true`` and the returned objects,
or ``"ok": false`` and ``{"error": {"kind": ..., "message": ...}}`` where kind
is one of ``not_found``, ``fault`` or ``invalid``.

Hook code may print freely: stdout is redirected to stderr once the protocol
stream has been captured.
"""

from __future__ import annotations

import importlib.util
import json
import logging
import re
import sys
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, TextIO

from hookgate.objects import RequestObject, SessionObject
from hookgate.runtime.decorators import Hook
from hookgate.runtime.request import HookRequest

logger = logging.getLogger(__name__)


class BundleLoadError(Exception):
    """A bundle file could not be imported."""


@dataclass
class _LoadedBundle:
    base_dir: str
    signature: tuple[tuple[str, int], ...]
    modules: list[ModuleType] = field(default_factory=list)


class BundleLoader:
    """Imports bundle files and re-imports them when they change on disk."""

    def __init__(self) -> None:
        self._bundles: dict[str, _LoadedBundle] = {}

    @staticmethod
    def _signature(base_dir: Path, file_list: list[str]) -> tuple[tuple[str, int], ...]:
        return tuple((name, (base_dir / name).stat().st_mtime_ns) for name in file_list if name.endswith(".py"))

    @staticmethod
    def _module_name(bundle_id: str, file_name: str) -> str:
        safe_id = re.sub(r"\W", "_", bundle_id)
        stem = re.sub(r"\W", "_", Path(file_name).stem)
        return f"hookgate_bundle_{safe_id}_{stem}"

    def load(self, bundle: dict[str, Any]) -> list[ModuleType]:
        bundle_id = str(bundle["id"])
        base_dir = Path(bundle["base_dir"])
        file_list = [str(name) for name in bundle.get("file_list", [])]

        try:
            signature = self._signature(base_dir, file_list)
        except OSError as e:
            raise BundleLoadError(str(e)) from e

        loaded = self._bundles.get(bundle_id)
        if loaded is not None and loaded.signature == signature:
            return loaded.modules

        if str(base_dir) not in sys.path:
            sys.path.insert(0, str(base_dir))

        modules = []
        for file_name, _ in signature:
            module_name = self._module_name(bundle_id, file_name)
            spec = importlib.util.spec_from_file_location(module_name, base_dir / file_name)
            if spec is None or spec.loader is None:
                raise BundleLoadError(f"cannot import {file_name}")
            module = importlib.util.module_from_spec(spec)
            sys.modules[module_name] = module
            try:
                spec.loader.exec_module(module)
            except Exception as e:
                sys.modules.pop(module_name, None)
                raise BundleLoadError(f"{file_name}: {type(e).__name__}: {e}") from e
            modules.append(module)

        self._bundles[bundle_id] = _LoadedBundle(base_dir=str(base_dir), signature=signature, modules=modules)
        logger.debug("Loaded bundle %s (%d modules)", bundle_id, len(modules))
        return modules

    def unload(self, bundle_id: str) -> bool:
        """Drop a bundle's modules and its import path entry.

        Returns:
            True if the bundle was loaded
        """
        loaded = self._bundles.pop(bundle_id, None)
        if loaded is None:
            return False
        for module in loaded.modules:
            sys.modules.pop(module.__name__, None)
        if loaded.base_dir in sys.path and all(b.base_dir != loaded.base_dir for b in self._bundles.values()):
            sys.path.remove(loaded.base_dir)
        logger.debug("Unloaded bundle %s", bundle_id)
        return True

    def resolve(self, bundle: dict[str, Any], hook_name: str) -> Hook | None:
        for module in self.load(bundle):
            candidate = getattr(module, hook_name, None)
            if isinstance(candidate, Hook):
                return candidate
            if callable(candidate):
                return Hook(candidate)
        return None


def _error(message_id: Any, kind: str, message: str) -> dict[str, Any]:
    return {"id": message_id, "ok": False, "error": {"kind": kind, "message": message}}


def handle_call(message: dict[str, Any], loader: BundleLoader) -> dict[str, Any]:
    message_id = message.get("id")
    hook_name = str(message.get("hook") or "")
    try:
        hook = loader.resolve(message["bundle"], hook_name)
    except KeyError as e:
        return _error(message_id, "invalid", f"missing field {e}")
    except (BundleLoadError, TypeError) as e:
        return _error(message_id, "fault", f"bundle load failed: {e}")
    if hook is None:
        return _error(message_id, "not_found", f"hook '{hook_name}' not found")

    request = HookRequest(RequestObject.from_dict(message.get("request") or {}))
    session = SessionObject.from_dict(message.get("session"))
    metadata = dict(message.get("metadata") or {})
    spec = dict(message.get("spec") or {})

    try:
        request, session, metadata = hook(request, session, metadata, spec)
    except Exception as e:
        logger.error("Hook %s raised:\n%s", hook_name, traceback.format_exc())
        return _error(message_id, "fault", f"{type(e).__name__}: {e}")

    request_obj = request.object if isinstance(request, HookRequest) else request
    if not isinstance(request_obj, RequestObject) or not isinstance(session, SessionObject):
        return _error(message_id, "fault", f"hook '{hook_name}' returned unexpected types")
    try:
        return {
            "id": message_id,
            "ok": True,
            "request": request_obj.to_dict(),
            "session": session.to_dict(),
            "metadata": metadata if isinstance(metadata, dict) else {},
        }
    except (TypeError, ValueError) as e:
        # A field the hook set to a value of the wrong type
        return _error(message_id, "fault", f"hook '{hook_name}' returned invalid objects: {e}")


def handle_message(message: dict[str, Any], loader: BundleLoader) -> dict[str, Any]:
    op = message.get("op")
    if op == "ping":
        return {"id": message.get("id"), "ok": True}
    if op == "call":
        return handle_call(message, loader)
    if op == "unload":
        bundles = message.get("bundles") or []
        return {"id": message.get("id"), "ok": True, "unloaded": [b for b in bundles if loader.unload(str(b))]}
    return _error(message.get("id"), "invalid", f"unknown op {op!r}")


def serve(stdin: TextIO, stdout: TextIO) -> None:
    """Answer messages from ``stdin`` until it closes."""
    loader = BundleLoader()
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            reply = _error(None, "invalid", f"malformed message: {e}")
        else:
            if isinstance(message, dict):
                reply = handle_message(message, loader)
            else:
                reply = _error(None, "invalid", "message must be a JSON object")
        try:
            stdout.write(json.dumps(reply) + "\n")
        except (TypeError, ValueError) as e:
            # Metadata the hook returned is not JSON-serialisable
            stdout.write(json.dumps(_error(reply.get("id"), "fault", f"unserialisable reply: {e}")) + "\n")
        stdout.flush()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)-20s - %(levelname)-8s - %(message)s",
        stream=sys.stderr,
    )
    protocol_out = sys.stdout
    sys.stdout = sys.stderr
    serve(sys.stdin, protocol_out)


if __name__ == "__main__":
    main()
