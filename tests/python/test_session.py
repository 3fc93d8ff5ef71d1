# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Tests for Session, SessionOptions and SessionRunArgs.

Scenarios:
1. Two-operation graph run once, then released without leaks
2. Failing runs expose no outputs
3. Session keeps its graph from being released
"""

import gc
import threading

import numpy as np
import pytest

from tensorbind import ops
from tensorbind.core.types import DataType, HandleKind, StatusCode
from tensorbind.errors import BindingError, HandleInUse, NativeCallFailure, UseAfterRelease
from tensorbind.scope import Scope
from tensorbind.session import Session, SessionOptions, SessionRunArgs
from tensorbind.tensor import Tensor


def _two_op_graph(runtime):
    """x (placeholder, shape [2]) and y = x * 3."""
    scope = Scope.new_root_scope(runtime)
    x = ops.placeholder(scope.with_op_name("x"), DataType.Float, shape=[2])
    y = ops.multiply(scope.with_op_name("y"), x, 3.0)
    return scope.graph, x, y


class TestSessionRun:
    """Tests for Session.run."""

    def test_two_operation_scenario(self, runtime):
        """Build, run once, release session then graph, nothing left."""
        graph, x, y = _two_op_graph(runtime)
        session = Session(graph)

        (result,) = session.run([y], feeds={x: np.array([1.0, 2.0], np.float32)})
        assert result.shape == (2,)
        assert result.dtype == DataType.Float
        np.testing.assert_array_equal(result.numpy(), [3.0, 6.0])

        result.release()
        session.release()
        graph.release()
        assert len(runtime.registry) == 0
        assert all(count == 0 for count in runtime.api.live_counts().values())

    def test_feed_tensor(self, runtime):
        """Tensors can be fed directly and stay owned by the caller."""
        graph, x, y = _two_op_graph(runtime)
        with Session(graph) as session:
            with Tensor.from_numpy(np.array([2.0, 4.0], np.float32)) as feed:
                (result,) = session.run([y], feeds=[(x, feed)])
                assert not feed.released
            np.testing.assert_array_equal(result.numpy(), [6.0, 12.0])
            result.release()

    def test_feed_values_marshaled_per_run(self, runtime):
        """Host values are marshaled to the placeholder's dtype and freed."""
        graph, x, y = _two_op_graph(runtime)
        with Session(graph) as session:
            (result,) = session.run([y], feeds={x: [1, 1]})
            np.testing.assert_array_equal(result.numpy(), [3.0, 3.0])
            assert runtime.registry.count(HandleKind.TENSOR) == 1
            result.release()

    def test_double_array_feeds_float_placeholder(self, runtime):
        """A float64 array feeds a Float placeholder like a list does."""
        graph, x, y = _two_op_graph(runtime)
        with Session(graph) as session:
            (from_array,) = session.run([y], feeds={x: np.array([0.1, 0.2])})
            (from_list,) = session.run([y], feeds={x: [0.1, 0.2]})
            with from_array, from_list:
                assert from_array.dtype == DataType.Float
                np.testing.assert_array_equal(from_array.numpy(), from_list.numpy())

    def test_missing_feed_exposes_nothing(self, runtime):
        """A failed run raises and leaves no output tensor behind."""
        graph, x, y = _two_op_graph(runtime)
        with Session(graph) as session:
            with pytest.raises(NativeCallFailure) as exc_info:
                session.run([y])
            assert exc_info.value.code == StatusCode.INVALID_ARGUMENT
            assert "You must feed a value for placeholder tensor 'x'" in str(exc_info.value)
            assert runtime.registry.count(HandleKind.TENSOR) == 0
            assert runtime.api.live_counts()["tensor"] == 0

    def test_partial_failure_exposes_nothing(self, runtime):
        """Outputs computed before the failure are not exposed either."""
        scope = Scope.new_root_scope(runtime)
        ok = ops.constant(scope, np.float32(1.0))
        x = ops.placeholder(scope.with_op_name("x"), DataType.Float)
        with Session(scope.graph) as session:
            with pytest.raises(NativeCallFailure):
                session.run([ok, x])
            assert runtime.api.live_counts()["tensor"] == 0

    def test_wrong_feed_dtype(self, runtime):
        """Feeding a tensor of the wrong type is reported by the runtime."""
        graph, x, y = _two_op_graph(runtime)
        with Session(graph) as session:
            with Tensor.from_numpy(np.array([1, 2], np.int32)) as feed:
                with pytest.raises(NativeCallFailure) as exc_info:
                    session.run([y], feeds={x: feed})
            assert "expected Float" in exc_info.value.native_message

    def test_targets_only(self, runtime):
        """Running targets returns no tensors."""
        scope = Scope.new_root_scope(runtime)
        noop = ops.no_op(scope)
        with Session(scope.graph) as session:
            assert session.run(targets=[noop]) == []

    def test_foreign_output_rejected(self, runtime):
        """Fetches must belong to the session's graph."""
        graph, x, y = _two_op_graph(runtime)
        other, _, other_y = _two_op_graph(runtime)
        with Session(graph) as session:
            with pytest.raises(BindingError):
                session.run([other_y])

    def test_concurrent_runs(self, runtime):
        """Runs from several threads share the session."""
        graph, x, y = _two_op_graph(runtime)
        results = []
        errors = []

        with Session(graph) as session:

            def worker(value):
                try:
                    (t,) = session.run([y], feeds={x: np.full(2, value, np.float32)})
                    with t:
                        results.append(float(t.numpy()[0]))
                except Exception as e:  # pragma: no cover - reported below
                    errors.append(e)

            threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(10)

        assert errors == []
        assert sorted(results) == [3.0 * i for i in range(8)]


class TestSessionLifetime:
    """Tests for session and graph lifetimes."""

    def test_graph_outlives_session(self, runtime):
        """The graph cannot be released while a session is live."""
        graph, _, _ = _two_op_graph(runtime)
        session = Session(graph)
        with pytest.raises(HandleInUse):
            graph.release()
        session.release()
        graph.release()

    def test_close_then_run(self, runtime):
        """A closed session refuses to run."""
        graph, x, y = _two_op_graph(runtime)
        with Session(graph) as session:
            session.close()
            assert session.closed
            with pytest.raises(NativeCallFailure) as exc_info:
                session.run([y], feeds={x: [1.0, 2.0]})
            assert exc_info.value.code == StatusCode.CANCELLED

    def test_run_after_release(self, runtime):
        """A released session raises UseAfterRelease."""
        graph, x, y = _two_op_graph(runtime)
        session = Session(graph)
        session.release()
        with pytest.raises(UseAfterRelease):
            session.run([y], feeds={x: [1.0, 2.0]})

    def test_dropped_without_release(self, runtime):
        """A graph and session dropped without release are both freed."""
        graph, x, y = _two_op_graph(runtime)
        session = Session(graph)
        del graph, x, y
        gc.collect()
        assert runtime.registry.count(HandleKind.GRAPH) == 1

        del session
        gc.collect()
        assert len(runtime.registry) == 0
        assert runtime.api.live_counts()["graph"] == 0
        assert runtime.api.live_counts()["session"] == 0

    def test_shutdown_releases_in_order(self, runtime):
        """Runtime shutdown releases sessions before their graphs."""
        graph, _, _ = _two_op_graph(runtime)
        session = Session(graph)
        assert runtime.registry.count(HandleKind.SESSION) == 1
        runtime.shutdown()
        assert len(runtime.registry) == 0
        assert graph.released
        assert session.guard.released

    def test_shutdown_repeatable(self, runtime):
        """Shutdown can run again, and the runtime keeps working after it."""
        runtime.shutdown()
        graph, x, y = _two_op_graph(runtime)
        with Session(graph) as session:
            (result,) = session.run([y], feeds={x: [1.0, 2.0]})
            with result:
                np.testing.assert_array_equal(result.numpy(), [3.0, 6.0])
        runtime.shutdown()
        assert graph.released
        assert len(runtime.registry) == 0


class TestSessionOptions:
    """Tests for SessionOptions."""

    def test_local_target(self, runtime):
        """The local target is accepted."""
        graph, _, _ = _two_op_graph(runtime)
        with SessionOptions(runtime) as options:
            options.set_target("local").set_config(b"")
            with Session(graph, options):
                pass
        assert runtime.registry.count(HandleKind.SESSION_OPTIONS) == 0

    def test_remote_target_rejected(self, runtime):
        """Unknown targets fail to create a session and leak nothing."""
        graph, _, _ = _two_op_graph(runtime)
        with SessionOptions(runtime) as options:
            options.set_target("grpc://localhost:2222")
            with pytest.raises(NativeCallFailure):
                Session(graph, options)
        assert runtime.registry.count(HandleKind.SESSION) == 0
        assert runtime.api.live_counts()["session"] == 0


class TestSessionRunArgs:
    """Tests for SessionRunArgs."""

    def test_fetch_by_token(self, runtime):
        """Fetched tensors are taken by token."""
        graph, x, y = _two_op_graph(runtime)
        with Session(graph) as session, SessionRunArgs() as args:
            args.add_feed(x, np.array([1.0, -1.0], np.float32))
            y_token = args.request_fetch(y)
            x_token = args.request_fetch(x.operation)
            session.run_with(args)

            with args.fetch(y_token) as t:
                np.testing.assert_array_equal(t.numpy(), [3.0, -3.0])
            with pytest.raises(BindingError):
                args.fetch(y_token)
            assert x_token == 1
        assert runtime.registry.count(HandleKind.TENSOR) == 0

    def test_fetch_before_run(self):
        """Fetching before a run raises."""
        with pytest.raises(BindingError):
            SessionRunArgs().fetch(0)

    def test_targets(self, runtime):
        """Targets added to the args are run."""
        scope = Scope.new_root_scope(runtime)
        noop = ops.no_op(scope)
        args = SessionRunArgs()
        args.add_target(noop)
        assert args.targets == [noop]
        with Session(scope.graph) as session:
            session.run_with(args)
        args.release()
