# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Tests for the Lifetime Guard.

Validates:
- Exactly-once release (explicit, collection, consume)
- DoubleRelease and UseAfterRelease detection
- Release blocked by dependents and blockers
- Shared and exclusive borrows across threads
"""

import gc
import threading
import time
from unittest.mock import Mock

import pytest

from tensorbind.core.types import HandleKind
from tensorbind.errors import (
    BindingError,
    DoubleRelease,
    HandleInUse,
    UseAfterRelease,
)
from tensorbind.guard import LifetimeGuard, SharedExclusiveLock
from tensorbind.handles import HandleRegistry


@pytest.fixture
def registry():
    return HandleRegistry()


class TestRelease:
    """Tests for exactly-once release."""

    def test_explicit_release(self, registry):
        """Test release frees the handle once."""
        deleter = Mock()
        guard = LifetimeGuard(registry, HandleKind.TENSOR, 0x10, deleter, "t")
        assert registry.is_live(HandleKind.TENSOR, 0x10)

        guard.release()
        deleter.assert_called_once_with(0x10)
        assert guard.released
        assert not registry.is_live(HandleKind.TENSOR, 0x10)

    def test_double_release(self, registry):
        """A second release raises and never reaches the native layer."""
        deleter = Mock()
        guard = LifetimeGuard(registry, HandleKind.TENSOR, 0x10, deleter)
        guard.release()
        with pytest.raises(DoubleRelease) as exc_info:
            guard.release()
        assert exc_info.value.handle == 0x10
        assert deleter.call_count == 1

    def test_with_block(self, registry):
        """Test the with-block releases on exit."""
        deleter = Mock()
        with LifetimeGuard(registry, HandleKind.BUFFER, 0x10, deleter) as guard:
            assert not guard.released
        deleter.assert_called_once_with(0x10)

    def test_with_block_after_explicit_release(self, registry):
        """Leaving the block after release() does not release again."""
        deleter = Mock()
        with LifetimeGuard(registry, HandleKind.BUFFER, 0x10, deleter) as guard:
            guard.release()
        assert deleter.call_count == 1

    def test_release_on_collection(self, registry):
        """Dropping the last reference frees the handle."""
        deleter = Mock()
        guard = LifetimeGuard(registry, HandleKind.GRAPH, 0x10, deleter)
        del guard
        gc.collect()
        deleter.assert_called_once_with(0x10)
        assert len(registry) == 0

    def test_consume(self, registry):
        """Consuming hands the handle over without freeing it."""
        deleter = Mock()
        guard = LifetimeGuard(registry, HandleKind.OPERATION_DESCRIPTION, 0x10, deleter)
        assert guard.consume() == 0x10
        assert guard.released
        deleter.assert_not_called()
        del guard
        gc.collect()
        deleter.assert_not_called()

    def test_null_handle_rejected(self, registry):
        """A null handle is never owned."""
        with pytest.raises(BindingError):
            LifetimeGuard(registry, HandleKind.GRAPH, 0, Mock())
        assert len(registry) == 0

    def test_deleter_failure_is_logged(self, registry, caplog):
        """A failing deleter is logged, not raised."""
        deleter = Mock(side_effect=RuntimeError("native crash"))
        guard = LifetimeGuard(registry, HandleKind.TENSOR, 0x10, deleter, "t")
        with caplog.at_level("ERROR", logger="tensorbind"):
            guard.release()
        assert guard.released
        assert "native crash" in caplog.text


class TestBorrow:
    """Tests for borrow and borrow_mut."""

    def test_borrow_yields_handle(self, registry):
        """Test borrowing yields the raw handle."""
        guard = LifetimeGuard(registry, HandleKind.GRAPH, 0x10, Mock())
        with guard.borrow() as handle:
            assert handle == 0x10
        with guard.borrow_mut() as handle:
            assert handle == 0x10
        assert guard.handle == 0x10
        guard.release()

    def test_use_after_release(self, registry):
        """Borrows after release raise UseAfterRelease."""
        guard = LifetimeGuard(registry, HandleKind.GRAPH, 0x10, Mock())
        guard.release()
        with pytest.raises(UseAfterRelease):
            with guard.borrow():
                pass
        with pytest.raises(UseAfterRelease):
            with guard.borrow_mut():
                pass
        with pytest.raises(UseAfterRelease):
            guard.handle

    def test_release_inside_exclusive_borrow(self, registry):
        """The exclusive holder may release."""
        deleter = Mock()
        guard = LifetimeGuard(registry, HandleKind.GRAPH, 0x10, deleter)
        with guard.borrow_mut():
            guard.release()
        deleter.assert_called_once_with(0x10)

    def test_release_waits_for_shared_borrow(self, registry):
        """Release blocks until calls in flight finish."""
        deleter = Mock()
        guard = LifetimeGuard(registry, HandleKind.SESSION, 0x10, deleter)
        borrowed = threading.Event()
        finish = threading.Event()

        def reader():
            with guard.borrow():
                borrowed.set()
                finish.wait(5)

        thread = threading.Thread(target=reader)
        thread.start()
        assert borrowed.wait(5)

        releaser = threading.Thread(target=guard.release)
        releaser.start()
        time.sleep(0.05)
        assert not guard.released
        deleter.assert_not_called()

        finish.set()
        thread.join(5)
        releaser.join(5)
        assert guard.released
        deleter.assert_called_once_with(0x10)

    def test_concurrent_shared_borrows(self, registry):
        """Shared borrows from many threads overlap."""
        guard = LifetimeGuard(registry, HandleKind.GRAPH, 0x10, Mock())
        barrier = threading.Barrier(4)
        seen = []

        def reader():
            with guard.borrow() as handle:
                barrier.wait(5)
                seen.append(handle)

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)
        assert seen == [0x10] * 4
        guard.release()


class TestBlockers:
    """Tests for dependents and blockers."""

    def test_dependent_blocks_release(self, registry):
        """A graph cannot be released while its session is live."""
        graph_deleter = Mock()
        graph = LifetimeGuard(registry, HandleKind.GRAPH, 0x10, graph_deleter)
        session = LifetimeGuard(
            registry, HandleKind.SESSION, 0x20, Mock(), depends_on=[graph.key]
        )
        with pytest.raises(HandleInUse):
            graph.release()
        assert not graph.released
        graph_deleter.assert_not_called()

        session.release()
        graph.release()
        graph_deleter.assert_called_once_with(0x10)

    def test_collection_order_follows_dependencies(self, registry, caplog):
        """Dropping a dependency first still frees both, dependent first."""
        calls = []
        graph = LifetimeGuard(
            registry, HandleKind.GRAPH, 0x10, lambda h: calls.append(("graph", h))
        )
        session = LifetimeGuard(
            registry,
            HandleKind.SESSION,
            0x20,
            lambda h: calls.append(("session", h)),
            depends_on=[graph.key],
        )
        with caplog.at_level("ERROR", logger="tensorbind"):
            del graph
            gc.collect()
            assert calls == []
            assert registry.is_live(HandleKind.GRAPH, 0x10)

            del session
            gc.collect()
        assert calls == [("session", 0x20), ("graph", 0x10)]
        assert len(registry) == 0
        assert caplog.text == ""

    def test_explicit_release_lets_dependency_go(self, registry):
        """Releasing the dependent drops its hold on the dependency."""
        graph_deleter = Mock()
        graph = LifetimeGuard(registry, HandleKind.GRAPH, 0x10, graph_deleter)
        session = LifetimeGuard(
            registry, HandleKind.SESSION, 0x20, Mock(), depends_on=[graph.key]
        )
        session.release()
        del graph
        gc.collect()
        graph_deleter.assert_called_once_with(0x10)
        assert len(registry) == 0

    def test_blockers(self, registry):
        """Blockers refuse explicit release until they are gone."""
        guard = LifetimeGuard(registry, HandleKind.TENSOR, 0x10, Mock())
        guard.blockers = ["view"]
        with pytest.raises(HandleInUse):
            guard.release()
        guard.blockers = []
        guard.release()


class TestSharedExclusiveLock:
    """Tests for SharedExclusiveLock."""

    def test_exclusive_is_reentrant(self):
        """Test nested exclusive acquisition by one thread."""
        lock = SharedExclusiveLock()
        with lock.exclusive():
            with lock.exclusive():
                with lock.shared():
                    pass

    def test_exclusive_excludes_other_threads(self):
        """Test another thread waits for the exclusive holder."""
        lock = SharedExclusiveLock()
        acquired = threading.Event()

        def reader():
            with lock.shared():
                acquired.set()

        with lock.exclusive():
            thread = threading.Thread(target=reader)
            thread.start()
            assert not acquired.wait(0.05)
        thread.join(5)
        assert acquired.is_set()
