"""Driver interface and registry.

A driver executes bundle hooks in one kind of external runtime. The pipeline
only ever talks to the Driver interface; concrete drivers register themselves
by name with @register_driver and are looked up from the bundle manifest's
``driver`` field.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from hookgate.bundle import Bundle, Stage
from hookgate.exceptions import ManifestError
from hookgate.objects import RequestObject, SessionObject

if TYPE_CHECKING:
    from hookgate.config import CoProcessConfig

logger = logging.getLogger(__name__)

# Granularity at which blocking waits re-check cancellation
POLL_INTERVAL = 0.05


@dataclass
class HookCall:
    """One hook invocation as sent to a runtime.

    Attributes:
        bundle: Bundle the hook belongs to
        stage: Stage being executed
        hook_name: Hook to call
        request: Encoded request
        session: Encoded session
        metadata: Read-mostly side-map (auth hooks return the session key here)
        spec: Opaque API context, passed through untouched
    """

    bundle: Bundle
    stage: Stage
    hook_name: str
    request: RequestObject
    session: SessionObject
    metadata: dict[str, Any] = field(default_factory=dict)
    spec: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {
            "bundle": self.bundle.to_wire(),
            "stage": self.stage.value,
            "hook": self.hook_name,
            "request": self.request.to_dict(),
            "session": self.session.to_dict(),
            "metadata": dict(self.metadata),
            "spec": dict(self.spec),
        }


@dataclass
class HookResult:
    """Objects returned by a runtime after a hook ran."""

    request: RequestObject
    session: SessionObject
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> HookResult:
        """Parse a runtime reply.

        Raises:
            ValueError: If the reply does not carry a request object
        """
        request = data.get("request")
        if not isinstance(request, dict):
            raise ValueError("reply has no request object")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("reply metadata is not an object")
        return cls(
            request=RequestObject.from_dict(request),
            session=SessionObject.from_dict(data.get("session")),
            metadata=metadata,
        )


class Driver(ABC):
    """Executes hooks in one kind of external runtime.

    Implementations must be safe to call from many request threads at once.
    """

    name: ClassVar[str] = ""

    def __init__(self, config: CoProcessConfig) -> None:
        self.config = config

    @abstractmethod
    def available_hooks(self, bundle: Bundle) -> set[str]:
        """Hook names the runtime can resolve for a bundle right now."""

    @abstractmethod
    def invoke(self, call: HookCall, timeout: float, cancel: threading.Event | None = None) -> HookResult:
        """Run one hook and return its updated objects.

        Args:
            call: Hook and objects to send
            timeout: Seconds the whole call may take
            cancel: Set by the caller to abandon the call

        Raises:
            HookExecutionError: If the call did not complete normally
        """

    def bind(self, bundle: Bundle) -> None:
        """Check every hook the bundle binds resolves in this driver.

        Raises:
            ManifestError: If a bound hook name cannot be resolved
        """
        available = self.available_hooks(bundle)
        missing = [f"{h.stage.value}:{h.name}" for h in bundle.hooks if h.name not in available]
        if missing:
            raise ManifestError(
                str(bundle.base_dir),
                f"hooks not found by driver '{self.name}': {', '.join(missing)}",
            )
        logger.info("Bound bundle '%s' to driver '%s'", bundle.id, self.name)

    def unbind(self, bundle_id: str) -> None:
        """Forget anything cached for a bundle.

        The default keeps nothing per bundle; the http runtime owns its own cache.
        """

    def close(self) -> None:
        """Release runtime resources."""

    def __enter__(self) -> Driver:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class _DriverRegistry:
    """Registry of driver classes by name."""

    def __init__(self) -> None:
        self._drivers: dict[str, type[Driver]] = {}

    def register(self, name: str, driver_cls: type[Driver]) -> None:
        self._drivers[name] = driver_cls

    def get(self, name: str) -> type[Driver] | None:
        return self._drivers.get(name)

    def names(self) -> list[str]:
        return sorted(self._drivers)


_registry = _DriverRegistry()


def get_registry() -> _DriverRegistry:
    """Get the global driver registry."""
    return _registry


def register_driver(name: str) -> Callable[[type[Driver]], type[Driver]]:
    """Class decorator registering a driver under a manifest name.

    Example:
        @register_driver("python")
        class PythonDriver(Driver):
            ...
    """

    def decorator(cls: type[Driver]) -> type[Driver]:
        cls.name = name
        _registry.register(name, cls)
        return cls

    return decorator


def create_driver(name: str, config: CoProcessConfig) -> Driver:
    """Instantiate the driver registered under ``name``.

    Raises:
        KeyError: If no driver is registered under that name
    """
    driver_cls = _registry.get(name)
    if driver_cls is None:
        raise KeyError(f"Unknown driver: {name}")
    return driver_cls(config)
