# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Loopback Native Runtime

An in-process runtime honouring the same C-API contract as
libtensorflow: opaque integer handles, out-parameter statuses with
TF_Code values, tensors as flat byte buffers, graphs whose operations
are owned by the graph, and sessions that keep per-session variable
state. Arithmetic is delegated to NumPy kernels from the
KernelRegistry.

It lets the binding run on hosts without libtensorflow. Misuse that
would be undefined behaviour in C (unknown or freed handles) raises
InvalidHandleFault instead of corrupting memory, which makes binding
bugs visible in tests.
"""

import functools
import itertools
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import numpy as np

from ..core.types import DataType, Shape, StatusCode, from_numpy_dtype, to_numpy_dtype
from .base import NativeAPI, NativeOutput
from .kernels import KernelError, KernelRegistry, VariableRef

logger = logging.getLogger("tensorbind.native.loopback")

# C-API level this runtime follows.
LOOPBACK_VERSION = "2.15.0"


class InvalidHandleFault(RuntimeError):
    """A handle that the runtime never issued, or already freed, was used."""


@dataclass
class _StatusState:
    code: StatusCode = StatusCode.OK
    message: str = ""


@dataclass
class _Node:
    handle: int
    graph: int
    name: str
    op_type: str
    inputs: list
    control_inputs: list
    attrs: dict
    device: str
    output_types: list
    output_shapes: list


@dataclass
class _Description:
    graph: int
    op_type: str
    name: str
    inputs: list = field(default_factory=list)
    control_inputs: list = field(default_factory=list)
    attrs: dict = field(default_factory=dict)
    device: str = ""


@dataclass
class _GraphState:
    nodes: dict = field(default_factory=dict)
    sessions: set = field(default_factory=set)
    pending_delete: bool = False


@dataclass
class _OptionsState:
    target: str = ""
    config: bytes = b""


@dataclass
class _SessionState:
    graph: int
    target: str
    closed: bool = False
    variables: dict = field(default_factory=dict)


@dataclass
class _TensorState:
    dtype: int
    dims: list
    buffer: np.ndarray


def _reports_status(default: Any = None):
    """Run a status-taking call under the lock, turning KernelError into status."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args):
            with self._lock:
                state = self._lookup(self._statuses, args[-1], "status")
                state.code, state.message = StatusCode.OK, ""
                try:
                    return func(self, *args)
                except KernelError as e:
                    state.code, state.message = e.code, e.message
                    return default() if callable(default) else default

        return wrapper

    return decorator


def _locked(func):
    @functools.wraps(func)
    def wrapper(self, *args):
        with self._lock:
            return func(self, *args)

    return wrapper


class LoopbackCAPI(NativeAPI):
    """
    In-process implementation of the native C API.

    Thread Safety: every entry point holds one re-entrant lock, so
    concurrent calls are serialized.

    Example:
        api = LoopbackCAPI()
        graph = api.new_graph()
        ...
        api.delete_graph(graph)
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._ids = itertools.count(0x1000, 0x10)

        self._statuses: dict[int, _StatusState] = {}
        self._graphs: dict[int, _GraphState] = {}
        self._descriptions: dict[int, _Description] = {}
        self._nodes: dict[int, _Node] = {}
        self._options: dict[int, _OptionsState] = {}
        self._sessions: dict[int, _SessionState] = {}
        self._tensors: dict[int, _TensorState] = {}
        self._buffers: dict[int, bytes] = {}

    @property
    def name(self) -> str:
        return "loopback"

    def is_available(self) -> bool:
        return True

    def version(self) -> str:
        return f"{LOOPBACK_VERSION}-loopback"

    def live_counts(self) -> dict[str, int]:
        """Number of live native objects per table, for leak checks."""
        with self._lock:
            return {
                "status": len(self._statuses),
                "graph": len(self._graphs),
                "description": len(self._descriptions),
                "session_options": len(self._options),
                "session": len(self._sessions),
                "tensor": len(self._tensors),
                "buffer": len(self._buffers),
            }

    def _new_id(self) -> int:
        return next(self._ids)

    @staticmethod
    def _lookup(table: dict, handle: int, kind: str):
        try:
            return table[handle]
        except (KeyError, TypeError):
            raise InvalidHandleFault(f"invalid {kind} handle {handle!r}") from None

    def _pop(self, table: dict, handle: int, kind: str):
        value = self._lookup(table, handle, kind)
        del table[handle]
        return value

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @_locked
    def new_status(self) -> int:
        handle = self._new_id()
        self._statuses[handle] = _StatusState()
        return handle

    @_locked
    def delete_status(self, status: int) -> None:
        self._pop(self._statuses, status, "status")

    @_locked
    def get_code(self, status: int) -> int:
        return int(self._lookup(self._statuses, status, "status").code)

    @_locked
    def message(self, status: int) -> str:
        return self._lookup(self._statuses, status, "status").message

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------

    @_locked
    def new_graph(self) -> int:
        handle = self._new_id()
        self._graphs[handle] = _GraphState()
        return handle

    @_locked
    def delete_graph(self, graph: int) -> None:
        state = self._lookup(self._graphs, graph, "graph")
        if state.sessions:
            # Sessions hold a reference; the graph goes with the last one.
            state.pending_delete = True
            return
        self._free_graph(graph)

    def _free_graph(self, graph: int) -> None:
        state = self._graphs.pop(graph)
        for node in state.nodes.values():
            self._nodes.pop(node.handle, None)

    def _live_graph(self, graph: int) -> _GraphState:
        state = self._lookup(self._graphs, graph, "graph")
        if state.pending_delete:
            raise InvalidHandleFault(f"graph handle {graph!r} was deleted")
        return state

    @_locked
    def new_operation(self, graph: int, op_type: str, name: str) -> int:
        self._live_graph(graph)
        handle = self._new_id()
        self._descriptions[handle] = _Description(graph=graph, op_type=op_type, name=name)
        return handle

    @_locked
    def abandon_operation(self, desc: int) -> None:
        self._pop(self._descriptions, desc, "operation description")

    def _desc(self, desc: int) -> _Description:
        return self._lookup(self._descriptions, desc, "operation description")

    @_locked
    def set_device(self, desc: int, device: str) -> None:
        self._desc(desc).device = device

    @_locked
    def add_input(self, desc: int, output: NativeOutput) -> None:
        self._desc(desc).inputs.append((int(output[0]), int(output[1])))

    @_locked
    def add_input_list(self, desc: int, outputs: Sequence[NativeOutput]) -> None:
        self._desc(desc).inputs.extend((int(o), int(i)) for o, i in outputs)

    @_locked
    def add_control_input(self, desc: int, operation: int) -> None:
        self._desc(desc).control_inputs.append(int(operation))

    @_locked
    def set_attr_type(self, desc: int, name: str, dtype: int) -> None:
        self._desc(desc).attrs[name] = int(dtype)

    @_locked
    def set_attr_int(self, desc: int, name: str, value: int) -> None:
        self._desc(desc).attrs[name] = int(value)

    @_locked
    def set_attr_float(self, desc: int, name: str, value: float) -> None:
        self._desc(desc).attrs[name] = float(value)

    @_locked
    def set_attr_bool(self, desc: int, name: str, value: bool) -> None:
        self._desc(desc).attrs[name] = bool(value)

    @_locked
    def set_attr_string(self, desc: int, name: str, value: bytes) -> None:
        self._desc(desc).attrs[name] = bytes(value)

    @_locked
    def set_attr_shape(self, desc: int, name: str, dims: Optional[Sequence[int]]) -> None:
        self._desc(desc).attrs[name] = None if dims is None else [int(d) for d in dims]

    @_reports_status()
    def set_attr_tensor(self, desc: int, name: str, tensor: int, status: int) -> None:
        state = self._lookup(self._tensors, tensor, "tensor")
        self._desc(desc).attrs[name] = np.array(self._tensor_value(state), copy=True)

    @_reports_status(default=0)
    def finish_operation(self, desc: int, status: int) -> int:
        description = self._pop(self._descriptions, desc, "operation description")
        node = self._create_node(
            description.graph,
            description.op_type,
            description.name,
            description.inputs,
            description.control_inputs,
            description.attrs,
            description.device,
        )
        return node.handle

    def _create_node(
        self,
        graph: int,
        op_type: str,
        name: str,
        inputs: list,
        control_inputs: list,
        attrs: dict,
        device: str = "",
    ) -> _Node:
        state = self._live_graph(graph)

        if not KernelRegistry.is_supported(op_type):
            raise KernelError(
                StatusCode.INVALID_ARGUMENT,
                f"Op type not registered '{op_type}' in binary",
            )
        op_def = KernelRegistry.get(op_type)

        if not name:
            raise KernelError(StatusCode.INVALID_ARGUMENT, "Node name must not be empty")
        if name in state.nodes:
            raise KernelError(
                StatusCode.INVALID_ARGUMENT, f"Duplicate node name in graph: '{name}'"
            )

        if op_def.num_inputs is not None and len(inputs) != op_def.num_inputs:
            raise KernelError(
                StatusCode.INVALID_ARGUMENT,
                f"{op_type} node '{name}' expects {op_def.num_inputs} inputs, "
                f"got {len(inputs)}",
            )

        merged = dict(op_def.defaults)
        merged.update(attrs)
        for attr in op_def.required_attrs:
            if attr not in merged:
                raise KernelError(
                    StatusCode.INVALID_ARGUMENT,
                    f"NodeDef missing attr '{attr}' from Op<name={op_type}>",
                )

        input_types = []
        input_shapes = []
        for position, (producer_handle, index) in enumerate(inputs):
            producer = self._graph_node(graph, producer_handle, name)
            if not 0 <= index < len(producer.output_types):
                raise KernelError(
                    StatusCode.OUT_OF_RANGE,
                    f"Node '{name}': input {position} refers to output {index} "
                    f"of '{producer.name}', which has {len(producer.output_types)} outputs",
                )
            if position in op_def.ref_inputs and producer.op_type != "VariableV2":
                raise KernelError(
                    StatusCode.INVALID_ARGUMENT,
                    f"Input {position} of node '{name}' must be a reference "
                    f"to a variable, got output of '{producer.name}'",
                )
            input_types.append(producer.output_types[index])
            input_shapes.append(producer.output_shapes[index])

        for control in control_inputs:
            self._graph_node(graph, control, name)

        if op_type == "Const":
            value_type = from_numpy_dtype(merged["value"].dtype)
            if value_type is None or int(value_type) != int(merged["dtype"]):
                raise KernelError(
                    StatusCode.INVALID_ARGUMENT,
                    f"Const node '{name}': value does not match dtype attr",
                )

        output_types = op_def.output_types(merged, input_types)
        if op_def.shape_fn is not None:
            output_shapes = op_def.shape_fn(merged, input_shapes)
        else:
            output_shapes = [None] * len(output_types)

        node = _Node(
            handle=self._new_id(),
            graph=graph,
            name=name,
            op_type=op_type,
            inputs=list(inputs),
            control_inputs=list(control_inputs),
            attrs=merged,
            device=device,
            output_types=[int(t) for t in output_types],
            output_shapes=[None if s is None else list(s) for s in output_shapes],
        )
        state.nodes[name] = node
        self._nodes[node.handle] = node
        return node

    def _graph_node(self, graph: int, handle: int, consumer: str) -> _Node:
        node = self._nodes.get(handle)
        if node is None or node.graph != graph:
            raise KernelError(
                StatusCode.INVALID_ARGUMENT,
                f"Node '{consumer}' references an operation from a different graph",
            )
        return node

    # ------------------------------------------------------------------
    # Graph inspection
    # ------------------------------------------------------------------

    @_locked
    def graph_operation_by_name(self, graph: int, name: str) -> int:
        node = self._lookup(self._graphs, graph, "graph").nodes.get(name)
        return node.handle if node is not None else 0

    @_locked
    def graph_next_operation(self, graph: int, position: int) -> tuple[int, int]:
        nodes = list(self._lookup(self._graphs, graph, "graph").nodes.values())
        if position < len(nodes):
            return nodes[position].handle, position + 1
        return 0, position

    def _node(self, operation: int) -> _Node:
        return self._lookup(self._nodes, operation, "operation")

    @_locked
    def operation_name(self, operation: int) -> str:
        return self._node(operation).name

    @_locked
    def operation_op_type(self, operation: int) -> str:
        return self._node(operation).op_type

    @_locked
    def operation_device(self, operation: int) -> str:
        return self._node(operation).device

    @_locked
    def operation_num_inputs(self, operation: int) -> int:
        return len(self._node(operation).inputs)

    @_locked
    def operation_num_outputs(self, operation: int) -> int:
        return len(self._node(operation).output_types)

    @_locked
    def operation_output_type(self, output: NativeOutput) -> int:
        node = self._node(output[0])
        if not 0 <= output[1] < len(node.output_types):
            raise InvalidHandleFault(f"output index {output[1]} out of range")
        return node.output_types[output[1]]

    @_reports_status()
    def graph_get_tensor_shape(
        self, graph: int, output: NativeOutput, status: int
    ) -> Optional[list[int]]:
        node = self._graph_node(graph, output[0], "<shape query>")
        if not 0 <= output[1] < len(node.output_shapes):
            raise KernelError(
                StatusCode.OUT_OF_RANGE,
                f"Node '{node.name}' has no output {output[1]}",
            )
        shape = node.output_shapes[output[1]]
        return None if shape is None else list(shape)

    @_reports_status(default=list)
    def add_gradients(
        self,
        graph: int,
        ys: Sequence[NativeOutput],
        xs: Sequence[NativeOutput],
        dx: Optional[Sequence[NativeOutput]],
        status: int,
    ) -> list[Optional[NativeOutput]]:
        state = self._live_graph(graph)
        ys = [(int(o), int(i)) for o, i in ys]
        xs = [(int(o), int(i)) for o, i in xs]
        if dx is not None and len(dx) != len(ys):
            raise KernelError(
                StatusCode.INVALID_ARGUMENT,
                f"dx must have one entry per y: {len(dx)} vs {len(ys)}",
            )
        for endpoint in ys + xs:
            self._graph_node(graph, endpoint[0], "<gradients>")

        builder = _GradientBuilder(self, graph, _unique_name(state, "gradients"))
        try:
            return builder.gradients(ys, xs, dx)
        except KernelError:
            builder.rollback()
            raise

    @_reports_status(default=0)
    def graph_to_graph_def(self, graph: int, status: int) -> int:
        state = self._lookup(self._graphs, graph, "graph")
        nodes = []
        for node in state.nodes.values():
            inputs = []
            for producer, index in node.inputs:
                producer_name = self._nodes[producer].name
                inputs.append(producer_name if index == 0 else f"{producer_name}:{index}")
            inputs.extend("^" + self._nodes[c].name for c in node.control_inputs)
            entry = {"name": node.name, "op": node.op_type, "input": inputs}
            if node.device:
                entry["device"] = node.device
            entry["attr"] = {k: _attr_to_json(v) for k, v in sorted(node.attrs.items())}
            nodes.append(entry)

        payload = {"node": nodes, "versions": {"producer": LOOPBACK_VERSION}}
        handle = self._new_id()
        self._buffers[handle] = json.dumps(payload, default=str).encode("utf-8")
        return handle

    @_locked
    def buffer_data(self, buffer: int) -> bytes:
        return self._lookup(self._buffers, buffer, "buffer")

    @_locked
    def delete_buffer(self, buffer: int) -> None:
        self._pop(self._buffers, buffer, "buffer")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @_locked
    def new_session_options(self) -> int:
        handle = self._new_id()
        self._options[handle] = _OptionsState()
        return handle

    @_locked
    def delete_session_options(self, options: int) -> None:
        self._pop(self._options, options, "session options")

    @_locked
    def set_target(self, options: int, target: str) -> None:
        self._lookup(self._options, options, "session options").target = target

    @_reports_status()
    def set_config(self, options: int, proto: bytes, status: int) -> None:
        state = self._lookup(self._options, options, "session options")
        if not isinstance(proto, (bytes, bytearray)):
            raise KernelError(StatusCode.INVALID_ARGUMENT, "Unparseable ConfigProto")
        state.config = bytes(proto)

    @_reports_status(default=0)
    def new_session(self, graph: int, options: int, status: int) -> int:
        graph_state = self._live_graph(graph)
        opts = self._lookup(self._options, options, "session options")
        if opts.target not in ("", "local"):
            raise KernelError(
                StatusCode.INVALID_ARGUMENT,
                "No session factory registered for the given session options: "
                f'{{target: "{opts.target}"}} Registered factories are {{LOOPBACK}}.',
            )
        handle = self._new_id()
        self._sessions[handle] = _SessionState(graph=graph, target=opts.target)
        graph_state.sessions.add(handle)
        logger.debug("session %#x created on graph %#x", handle, graph)
        return handle

    @_reports_status()
    def close_session(self, session: int, status: int) -> None:
        self._lookup(self._sessions, session, "session").closed = True

    @_reports_status()
    def delete_session(self, session: int, status: int) -> None:
        state = self._pop(self._sessions, session, "session")
        graph_state = self._graphs.get(state.graph)
        if graph_state is not None:
            graph_state.sessions.discard(session)
            if graph_state.pending_delete and not graph_state.sessions:
                self._free_graph(state.graph)

    @_reports_status(default=list)
    def session_run(
        self,
        session: int,
        inputs: Sequence[tuple[NativeOutput, int]],
        outputs: Sequence[NativeOutput],
        targets: Sequence[int],
        status: int,
    ) -> list[int]:
        state = self._lookup(self._sessions, session, "session")
        if state.closed:
            raise KernelError(StatusCode.CANCELLED, "Session has been closed.")

        feeds = {}
        for (operation, index), tensor in inputs:
            node = self._graph_node(state.graph, operation, "<feed>")
            tensor_state = self._lookup(self._tensors, tensor, "tensor")
            if not 0 <= index < len(node.output_types):
                raise KernelError(
                    StatusCode.OUT_OF_RANGE, f"Node '{node.name}' has no output {index}"
                )
            if tensor_state.dtype != node.output_types[index]:
                raise KernelError(
                    StatusCode.INVALID_ARGUMENT,
                    f"Tensor fed to '{node.name}:{index}' has type "
                    f"{DataType(tensor_state.dtype).name}, expected "
                    f"{DataType(node.output_types[index]).name}",
                )
            feeds[(node.handle, index)] = self._tensor_value(tensor_state)

        execution = _Execution(self, state, feeds)
        for target in targets:
            execution.run_node(self._graph_node(state.graph, target, "<target>"))

        values = []
        for operation, index in outputs:
            node = self._graph_node(state.graph, operation, "<fetch>")
            if not 0 <= index < len(node.output_types):
                raise KernelError(
                    StatusCode.OUT_OF_RANGE, f"Node '{node.name}' has no output {index}"
                )
            values.append((node.output_types[index], execution.value_of((node.handle, index))))

        # Outputs are only materialized once the whole run succeeded.
        handles = []
        for dtype, value in values:
            array = np.ascontiguousarray(np.array(value, copy=True))
            handle = self._new_id()
            self._tensors[handle] = _TensorState(dtype, list(array.shape), array)
            handles.append(handle)
        return handles

    # ------------------------------------------------------------------
    # Tensors
    # ------------------------------------------------------------------

    @_locked
    def allocate_tensor(self, dtype: int, dims: Sequence[int], nbytes: int) -> int:
        handle = self._new_id()
        self._tensors[handle] = _TensorState(
            int(dtype), [int(d) for d in dims], np.zeros(int(nbytes), dtype=np.uint8)
        )
        return handle

    @_locked
    def new_tensor_from_array(
        self, dtype: int, dims: Sequence[int], array: np.ndarray
    ) -> int:
        if not array.flags.c_contiguous:
            raise InvalidHandleFault("zero-copy tensors need a C-contiguous buffer")
        handle = self._new_id()
        self._tensors[handle] = _TensorState(int(dtype), [int(d) for d in dims], array)
        return handle

    @_locked
    def delete_tensor(self, tensor: int) -> None:
        self._pop(self._tensors, tensor, "tensor")

    @_locked
    def tensor_type(self, tensor: int) -> int:
        return self._lookup(self._tensors, tensor, "tensor").dtype

    @_locked
    def num_dims(self, tensor: int) -> int:
        return len(self._lookup(self._tensors, tensor, "tensor").dims)

    @_locked
    def dim(self, tensor: int, index: int) -> int:
        return self._lookup(self._tensors, tensor, "tensor").dims[index]

    @_locked
    def tensor_byte_size(self, tensor: int) -> int:
        return int(self._lookup(self._tensors, tensor, "tensor").buffer.nbytes)

    @_locked
    def tensor_data(self, tensor: int) -> int:
        return int(self._lookup(self._tensors, tensor, "tensor").buffer.ctypes.data)

    @staticmethod
    def _tensor_value(state: _TensorState) -> np.ndarray:
        np_dtype = to_numpy_dtype(DataType(state.dtype))
        if np_dtype is None:
            raise KernelError(
                StatusCode.UNIMPLEMENTED,
                f"Data type {DataType(state.dtype).name} is not supported by the loopback runtime",
            )
        expected = Shape(list(state.dims)).numel() * np_dtype.itemsize
        if state.buffer.nbytes != expected:
            raise KernelError(
                StatusCode.INVALID_ARGUMENT,
                f"Malformed TF_Tensor: {state.buffer.nbytes} bytes for shape "
                f"{state.dims} of {DataType(state.dtype).name}",
            )
        raw = state.buffer.reshape(-1).view(np.uint8)
        return raw.view(np_dtype).reshape(state.dims)


class _KernelContext:
    """What a kernel may see of the running session."""

    def __init__(self, execution: "_Execution", node: _Node):
        self._execution = execution
        self.op_name = node.name

    def read_variable(self, ref: VariableRef) -> np.ndarray:
        variables = self._execution.session.variables
        if ref.name not in variables:
            raise KernelError(
                StatusCode.FAILED_PRECONDITION,
                f"Attempting to use uninitialized value {ref.name}",
            )
        return variables[ref.name]

    def write_variable(self, ref: VariableRef, value: np.ndarray) -> None:
        self._execution.session.variables[ref.name] = value

    def variable_shape(self, ref: VariableRef) -> Optional[list]:
        node = self._execution.graph.nodes.get(ref.name)
        if node is None:
            return None
        shape = node.attrs.get("shape")
        if shape is None or any(d < 0 for d in shape):
            return None
        return shape


class _Execution:
    """One session run: evaluates nodes on demand, each at most once."""

    def __init__(self, api: LoopbackCAPI, session: _SessionState, feeds: dict):
        self.api = api
        self.session = session
        self.graph = api._graphs[session.graph]
        self.feeds = feeds
        self.results: dict[int, list] = {}

    def value_of(self, endpoint: NativeOutput) -> np.ndarray:
        if endpoint in self.feeds:
            return self.feeds[endpoint]
        outputs = self.run_node(self.api._nodes[endpoint[0]])
        return outputs[endpoint[1]]

    def run_node(self, node: _Node) -> list:
        if node.handle in self.results:
            return self.results[node.handle]

        op_def = KernelRegistry.get(node.op_type)
        for control in node.control_inputs:
            self.run_node(self.api._nodes[control])

        args = []
        for position, (producer, index) in enumerate(node.inputs):
            if position in op_def.ref_inputs:
                source = self.api._nodes[producer]
                args.append(VariableRef(source.name, source.output_types[index]))
            else:
                args.append(self.value_of((producer, index)))

        try:
            outputs = op_def.kernel(_KernelContext(self, node), args, node.attrs)
        except (ValueError, TypeError, FloatingPointError) as e:
            raise KernelError(
                StatusCode.INVALID_ARGUMENT, f"{node.op_type} node '{node.name}': {e}"
            ) from e

        outputs = [
            np.asarray(value).astype(to_numpy_dtype(DataType(dtype)), copy=False)
            for value, dtype in zip(outputs, node.output_types)
        ]
        # Variables are read fresh on every use, like reference outputs.
        if node.op_type != "VariableV2":
            self.results[node.handle] = outputs
        return outputs


class _GradientBuilder:
    """Adds gradient nodes to a graph and removes them again on failure."""

    def __init__(self, api: LoopbackCAPI, graph: int, prefix: str):
        self.api = api
        self.graph = graph
        self.state = api._graphs[graph]
        self.prefix = prefix
        self.scope = prefix
        self.created: list[_Node] = []

    def add(self, op_type: str, inputs: list, attrs: Optional[dict] = None) -> NativeOutput:
        name = _unique_name(self.state, f"{self.scope}/{op_type}")
        node = self.api._create_node(self.graph, op_type, name, list(inputs), [], dict(attrs or {}))
        self.created.append(node)
        return (node.handle, 0)

    def output_type(self, endpoint: NativeOutput) -> int:
        return self.api._nodes[endpoint[0]].output_types[endpoint[1]]

    def rollback(self) -> None:
        for node in self.created:
            self.state.nodes.pop(node.name, None)
            self.api._nodes.pop(node.handle, None)
        self.created.clear()

    def _sum(self, endpoints: list) -> NativeOutput:
        total = endpoints[0]
        for other in endpoints[1:]:
            total = self.add("AddV2", [total, other])
        return total

    def gradients(self, ys: list, xs: list, dx: Optional[Sequence]) -> list:
        nodes = self.api._nodes
        order = list(self.state.nodes.values())

        consumers: dict[int, list[int]] = {}
        for node in order:
            for producer, _ in node.inputs:
                consumers.setdefault(producer, []).append(node.handle)

        backward = set()
        stack = [y[0] for y in ys]
        while stack:
            handle = stack.pop()
            if handle in backward:
                continue
            backward.add(handle)
            stack.extend(producer for producer, _ in nodes[handle].inputs)

        forward = set()
        stack = [x[0] for x in xs]
        while stack:
            handle = stack.pop()
            if handle in forward:
                continue
            forward.add(handle)
            stack.extend(consumers.get(handle, []))

        on_path = backward & forward
        x_ops = {x[0] for x in xs}
        pending: dict[NativeOutput, list] = {}

        self.scope = self.prefix
        for i, y in enumerate(ys):
            seed = (int(dx[i][0]), int(dx[i][1])) if dx is not None else self.add("OnesLike", [y])
            pending.setdefault(y, []).append(seed)

        for node in reversed(order):
            if node.handle not in on_path or node.handle in x_ops or not node.inputs:
                continue
            incoming = pending.get((node.handle, 0))
            if not incoming:
                continue
            grad_fn = KernelRegistry.get_gradient(node.op_type)
            if grad_fn is None:
                raise KernelError(
                    StatusCode.NOT_FOUND, f"No gradient defined for op: {node.op_type}"
                )
            self.scope = f"{self.prefix}/{node.name}_grad"
            grad = self._sum(incoming)
            for endpoint, input_grad in zip(node.inputs, grad_fn(self, node, grad)):
                if input_grad is not None and endpoint[0] in on_path:
                    pending.setdefault(endpoint, []).append(input_grad)

        results = []
        for x in xs:
            grads = pending.get(x)
            if not grads:
                results.append(None)
                continue
            self.scope = f"{self.prefix}/{nodes[x[0]].name}_sum"
            results.append(self._sum(grads))
        return results


def _unique_name(state: _GraphState, base: str) -> str:
    if base not in state.nodes:
        return base
    for i in itertools.count(1):
        candidate = f"{base}_{i}"
        if candidate not in state.nodes:
            return candidate


def _attr_to_json(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        dtype = from_numpy_dtype(value.dtype)
        return {
            "tensor": {
                "dtype": dtype.name if dtype is not None else str(value.dtype),
                "shape": list(value.shape),
                "values": value.tolist(),
            }
        }
    if isinstance(value, bytes):
        return {"s": value.decode("utf-8", errors="replace")}
    if isinstance(value, bool):
        return {"b": value}
    if isinstance(value, int):
        return {"i": value}
    if isinstance(value, float):
        return {"f": value}
    if value is None:
        return {"shape": {"unknown_rank": True}}
    if isinstance(value, list):
        return {"shape": {"dim": value}}
    return {"s": str(value)}
