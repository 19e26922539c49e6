"""Tests for the bounded worker pool."""

import threading
import time
from unittest.mock import Mock

import pytest

from hookgate.drivers.pool import AcquireCancelled, WorkerPool


class Instance:
    def __init__(self, n: int) -> None:
        self.n = n
        self.healthy = True


@pytest.fixture
def factory():
    counter = iter(range(1000))
    return Mock(side_effect=lambda: Instance(next(counter)))


class TestWorkerPool:
    """Test WorkerPool capacity and lifecycle."""

    def test_creates_lazily_and_reuses(self, factory) -> None:
        """Test instances are created on demand and reused after release."""
        pool = WorkerPool("test", factory, max_size=2)
        assert pool.size == 0

        with pool.lease(timeout=1) as first:
            assert pool.size == 1
        with pool.lease(timeout=1) as second:
            assert second is first

        assert factory.call_count == 1
        assert pool.idle_count == 1

    def test_bounded(self, factory) -> None:
        """Test acquire times out when every instance is busy."""
        pool = WorkerPool("test", factory, max_size=1)
        pool.acquire(timeout=1)
        with pytest.raises(TimeoutError):
            pool.acquire(timeout=0.1)
        assert factory.call_count == 1

    def test_waiter_gets_released_instance(self, factory) -> None:
        """Test a blocked acquire is woken by release."""
        pool = WorkerPool("test", factory, max_size=1)
        held = pool.acquire(timeout=1)
        got = []

        waiter = threading.Thread(target=lambda: got.append(pool.acquire(timeout=5)))
        waiter.start()
        time.sleep(0.1)
        pool.release(held)
        waiter.join(timeout=5)

        assert got == [held]

    def test_cancel_while_waiting(self, factory) -> None:
        """Test a set cancel event aborts the wait."""
        pool = WorkerPool("test", factory, max_size=1)
        pool.acquire(timeout=1)
        cancel = threading.Event()
        threading.Timer(0.1, cancel.set).start()
        with pytest.raises(AcquireCancelled):
            pool.acquire(timeout=5, cancel=cancel)

    def test_unhealthy_instances_are_evicted(self, factory) -> None:
        """Test lease disposes an instance that reports unhealthy."""
        dispose = Mock()
        pool = WorkerPool("test", factory, max_size=1, is_healthy=lambda i: i.healthy, dispose=dispose)

        with pool.lease(timeout=1) as instance:
            instance.healthy = False

        dispose.assert_called_once_with(instance)
        assert pool.size == 0
        with pool.lease(timeout=1) as replacement:
            assert replacement is not instance

    def test_dead_idle_instance_replaced_on_acquire(self, factory) -> None:
        """Test an instance that died while idle is disposed, not handed out."""
        dispose = Mock()
        pool = WorkerPool("test", factory, max_size=1, is_healthy=lambda i: i.healthy, dispose=dispose)
        with pool.lease(timeout=1) as first:
            pass
        first.healthy = False

        with pool.lease(timeout=1) as second:
            assert second is not first
            assert second.healthy

        dispose.assert_called_once_with(first)
        assert pool.size == 1
        assert factory.call_count == 2

    def test_lease_returns_instance_on_exception(self, factory) -> None:
        """Test the instance comes back when the with-block raises."""
        pool = WorkerPool("test", factory, max_size=1)
        with pytest.raises(ValueError):
            with pool.lease(timeout=1):
                raise ValueError("boom")
        assert pool.idle_count == 1

    def test_factory_failure_frees_slot(self) -> None:
        """Test a failing factory does not leak capacity."""
        pool = WorkerPool("test", Mock(side_effect=OSError("no exec")), max_size=1)
        with pytest.raises(OSError):
            pool.acquire(timeout=1)
        assert pool.size == 0

    def test_close(self, factory) -> None:
        """Test close disposes idle instances and rejects new acquires."""
        dispose = Mock()
        pool = WorkerPool("test", factory, max_size=2, dispose=dispose)
        busy = pool.acquire(timeout=1)
        idle = pool.acquire(timeout=1)
        pool.release(idle)

        pool.close()
        dispose.assert_called_once_with(idle)
        with pytest.raises(RuntimeError):
            pool.acquire(timeout=1)

        pool.release(busy)
        assert dispose.call_count == 2
        assert pool.size == 0

    def test_invalid_size(self, factory) -> None:
        with pytest.raises(ValueError):
            WorkerPool("test", factory, max_size=0)
