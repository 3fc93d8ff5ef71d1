# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Tests for the loopback runtime, used directly through its C-level API.
"""

import numpy as np
import pytest

from tensorbind import ops
from tensorbind.core.types import DataType, StatusCode
from tensorbind.native.kernels import KernelRegistry, same_as_input, same_shape
from tensorbind.native.loopback import InvalidHandleFault, LoopbackCAPI
from tensorbind.scope import Scope
from tensorbind.session import Session


@pytest.fixture
def loopback():
    api = LoopbackCAPI()
    yield api
    assert all(count == 0 for count in api.live_counts().values()), api.live_counts()


def _placeholder(api, graph, status, name):
    desc = api.new_operation(graph, "Placeholder", name)
    api.set_attr_type(desc, "dtype", int(DataType.Float))
    api.set_attr_shape(desc, "shape", [2])
    return api.finish_operation(desc, status)


class TestLoopbackBasics:
    """Identity and status handling."""

    def test_identity(self, loopback):
        """Test name, version and availability."""
        assert loopback.name == "loopback"
        assert loopback.is_available()
        assert loopback.version().endswith("-loopback")

    def test_status_lifecycle(self, loopback):
        """A new status is OK with an empty message."""
        status = loopback.new_status()
        assert loopback.get_code(status) == StatusCode.OK
        assert loopback.message(status) == ""
        loopback.delete_status(status)
        with pytest.raises(InvalidHandleFault):
            loopback.get_code(status)

    def test_unknown_handles_fault(self, loopback):
        """Handles never issued raise instead of misbehaving."""
        with pytest.raises(InvalidHandleFault):
            loopback.delete_tensor(0xDEAD)
        with pytest.raises(InvalidHandleFault):
            loopback.delete_graph(0)
        with pytest.raises(InvalidHandleFault):
            loopback.tensor_type(None)

    def test_status_reset_per_call(self, loopback):
        """Each status-taking call starts from OK."""
        graph = loopback.new_graph()
        status = loopback.new_status()
        loopback.finish_operation(loopback.new_operation(graph, "NoSuchOp", "a"), status)
        assert loopback.get_code(status) == StatusCode.INVALID_ARGUMENT
        loopback.finish_operation(loopback.new_operation(graph, "NoOp", "b"), status)
        assert loopback.get_code(status) == StatusCode.OK
        loopback.delete_status(status)
        loopback.delete_graph(graph)


class TestLoopbackGraphs:
    """Graph and session lifetimes inside the runtime."""

    def test_graph_delete_deferred_while_session_live(self, loopback):
        """Sessions keep their graph's nodes until they are deleted."""
        graph = loopback.new_graph()
        status = loopback.new_status()
        x = _placeholder(loopback, graph, status, "x")
        options = loopback.new_session_options()
        session = loopback.new_session(graph, options, status)
        assert loopback.get_code(status) == StatusCode.OK

        loopback.delete_graph(graph)
        assert loopback.live_counts()["graph"] == 1
        assert loopback.operation_name(x) == "x"
        with pytest.raises(InvalidHandleFault):
            loopback.new_operation(graph, "NoOp", "n")

        loopback.delete_session(session, status)
        assert loopback.live_counts()["graph"] == 0
        with pytest.raises(InvalidHandleFault):
            loopback.operation_name(x)

        loopback.delete_session_options(options)
        loopback.delete_status(status)

    def test_session_run(self, loopback):
        """Outputs are new tensors owned by the caller."""
        graph = loopback.new_graph()
        status = loopback.new_status()
        x = _placeholder(loopback, graph, status, "x")
        desc = loopback.new_operation(graph, "Square", "y")
        loopback.add_input(desc, (x, 0))
        y = loopback.finish_operation(desc, status)
        options = loopback.new_session_options()
        session = loopback.new_session(graph, options, status)

        feed = loopback.new_tensor_from_array(
            int(DataType.Float), [2], np.array([2.0, 3.0], np.float32)
        )
        (out,) = loopback.session_run(session, [((x, 0), feed)], [(y, 0)], [], status)
        assert loopback.get_code(status) == StatusCode.OK
        assert loopback.tensor_type(out) == DataType.Float
        assert loopback.num_dims(out) == 1
        assert loopback.dim(out, 0) == 2
        assert loopback.tensor_byte_size(out) == 8

        for tensor in (feed, out):
            loopback.delete_tensor(tensor)
        loopback.delete_session(session, status)
        loopback.delete_session_options(options)
        loopback.delete_graph(graph)
        loopback.delete_status(status)

    def test_zero_copy_needs_contiguous(self, loopback):
        """Arrays lent to the runtime must be C-contiguous."""
        strided = np.arange(4, dtype=np.float32)[::2]
        with pytest.raises(InvalidHandleFault):
            loopback.new_tensor_from_array(int(DataType.Float), [2], strided)

    def test_gradients_dx_length(self, loopback):
        """dx must match ys."""
        graph = loopback.new_graph()
        status = loopback.new_status()
        x = _placeholder(loopback, graph, status, "x")
        result = loopback.add_gradients(graph, [(x, 0)], [(x, 0)], [], status)
        assert result == []
        assert loopback.get_code(status) == StatusCode.INVALID_ARGUMENT
        loopback.delete_graph(graph)
        loopback.delete_status(status)


class TestKernelRegistry:
    """Tests for KernelRegistry."""

    def test_builtin_operators(self):
        """Test the operations the bindings build on are registered."""
        registered = KernelRegistry.list_operators()
        for op_type in ("Placeholder", "Const", "MatMul", "VariableV2", "ApplyAdadelta"):
            assert op_type in registered
        assert KernelRegistry.is_supported("AddV2")
        assert KernelRegistry.get_gradient("Square") is not None
        assert KernelRegistry.get_gradient("Assign") is None
        assert set(KernelRegistry.get("Assign").ref_inputs) == {0}
        assert not hasattr(KernelRegistry.get("Assign"), "stateful")
        with pytest.raises(KeyError):
            KernelRegistry.get("NoSuchOp")

    def test_custom_kernel(self, runtime):
        """Kernels registered at run time can be built and run."""

        @KernelRegistry.register(
            "TimesTwo", output_types=same_as_input, num_inputs=1, shape_fn=same_shape
        )
        def times_two(ctx, inputs, attrs):
            return [inputs[0] * 2]

        try:
            scope = Scope.new_root_scope(runtime)
            x = ops.constant(scope, np.array([1.5, 2.0], np.float32))
            y = ops.build(scope, "TimesTwo", [x]).output(0)
            assert y.dtype == DataType.Float
            with Session(scope.graph) as session:
                (result,) = session.run([y])
                with result:
                    np.testing.assert_array_equal(result.numpy(), [3.0, 4.0])
        finally:
            KernelRegistry._registry.pop("TimesTwo", None)
