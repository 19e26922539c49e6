"""Drivers executing bundle hooks in external runtimes.

Importing this package registers the built-in drivers:
- python: pool of worker subprocesses
- http: remote runtime over HTTP
"""

from hookgate.drivers.base import Driver, HookCall, HookResult, create_driver, get_registry, register_driver
from hookgate.drivers.http import HttpDriver
from hookgate.drivers.python import PythonDriver


def known_drivers() -> list[str]:
    """Names of all registered drivers."""
    return get_registry().names()


__all__ = [
    "Driver",
    "HookCall",
    "HookResult",
    "HttpDriver",
    "PythonDriver",
    "create_driver",
    "known_drivers",
    "register_driver",
]
