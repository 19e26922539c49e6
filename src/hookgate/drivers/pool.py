"""Bounded pool of runtime instances.

Condition-based capacity control: at most ``max_size`` instances exist, each
leased to at most one caller at a time. Instances come back through
``lease()`` on every exit path; broken ones are evicted instead of returned.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

W = TypeVar("W")

_WAIT_SLICE = 0.05


class AcquireCancelled(Exception):
    """The caller cancelled while waiting for an instance."""


class WorkerPool(Generic[W]):
    """Thread-safe pool of runtime instances.

    Args:
        name: Label used in logs and errors
        factory: Creates a new instance (called outside the pool lock)
        max_size: Upper bound on instances, idle and busy
        is_healthy: Decides whether an instance can be reused (checked on return and on acquire)
        dispose: Shuts an instance down
    """

    def __init__(
        self,
        name: str,
        factory: Callable[[], W],
        max_size: int,
        is_healthy: Callable[[W], bool] = lambda w: True,
        dispose: Callable[[W], None] = lambda w: None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.name = name
        self.max_size = max_size
        self._factory = factory
        self._is_healthy = is_healthy
        self._dispose = dispose

        self._cv = threading.Condition()
        self._idle: deque[W] = deque()
        self._size = 0
        self._closed = False

    def acquire(self, timeout: float, cancel: threading.Event | None = None) -> W:
        """Take an idle instance, creating one if capacity allows.

        Idle instances that are no longer healthy (for example a worker that
        died while parked) are evicted on the way and their slots reused.

        Raises:
            TimeoutError: If nothing became available within ``timeout``
            AcquireCancelled: If ``cancel`` was set while waiting
            RuntimeError: If the pool is closed
        """
        deadline = time.monotonic() + timeout
        stale: list[W] = []
        try:
            with self._cv:
                while True:
                    if self._closed:
                        raise RuntimeError(f"Pool {self.name} is closed")
                    if cancel is not None and cancel.is_set():
                        raise AcquireCancelled(self.name)
                    worker = self._take_idle(stale)
                    if worker is not None:
                        return worker
                    if self._size < self.max_size:
                        # Reserve the slot, create outside the lock
                        self._size += 1
                        break
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError(f"Pool acquire timeout for {self.name}")
                    self._cv.wait(timeout=min(remaining, _WAIT_SLICE))
        finally:
            for dead in stale:
                self._dispose(dead)

        try:
            worker = self._factory()
        except BaseException:
            with self._cv:
                self._size -= 1
                self._cv.notify()
            raise
        logger.debug("Pool %s created instance (%d/%d)", self.name, self._size, self.max_size)
        return worker

    def _take_idle(self, stale: list[W]) -> W | None:
        """Pop the first healthy idle instance; caller holds the lock."""
        while self._idle:
            worker = self._idle.popleft()
            if self._is_healthy(worker):
                return worker
            self._size -= 1
            stale.append(worker)
            logger.debug("Pool %s dropped a dead idle instance", self.name)
        return None

    def release(self, worker: W) -> None:
        """Return a healthy instance to the idle set."""
        with self._cv:
            if not self._closed:
                self._idle.append(worker)
                self._cv.notify()
                return
            self._size -= 1
        self._dispose(worker)

    def evict(self, worker: W) -> None:
        """Drop a broken instance and free its slot."""
        with self._cv:
            self._size -= 1
            self._cv.notify()
        logger.debug("Pool %s evicted an instance", self.name)
        self._dispose(worker)

    @contextmanager
    def lease(self, timeout: float, cancel: threading.Event | None = None) -> Iterator[W]:
        """Acquire an instance for the duration of a with-block."""
        worker = self.acquire(timeout, cancel)
        try:
            yield worker
        finally:
            if self._is_healthy(worker):
                self.release(worker)
            else:
                self.evict(worker)

    def close(self) -> None:
        """Dispose idle instances; busy ones are disposed when returned."""
        with self._cv:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._size -= len(idle)
            self._cv.notify_all()
        for worker in idle:
            self._dispose(worker)

    @property
    def size(self) -> int:
        """Current total instances (busy + idle)."""
        with self._cv:
            return self._size

    @property
    def idle_count(self) -> int:
        with self._cv:
            return len(self._idle)
