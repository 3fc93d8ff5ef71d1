# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Graph - owned native graph, its operations and their outputs.

Ownership:
- Graph owns its native handle through a LifetimeGuard.
- OperationDescription owns an unfinished operation until ``finish()``
  hands it to the native graph.
- Operation and Output are non-owning; they keep the Graph object alive
  and fail with UseAfterRelease once the Graph has been released.

Example:
    with Graph() as g:
        desc = g.new_operation("Placeholder", "x")
        desc.set_attr_type("dtype", DataType.Float)
        x = desc.finish()
        print(x.output(0).dtype)
"""

import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, Union

from .core.types import DataType, HandleKind, Shape
from .errors import BindingError, UseAfterRelease
from .tensor import Tensor

logger = logging.getLogger("tensorbind.graph")


def _default_runtime(runtime):
    if runtime is not None:
        return runtime
    from .runtime import get_runtime

    return get_runtime()


class Graph:
    """
    Owned native graph.

    Thread Safety: building (new_operation, finish, add_gradients) takes
    the graph exclusively; lookups take it shared.
    """

    def __init__(self, runtime=None, label: str = "Graph"):
        self.runtime = _default_runtime(runtime)
        api = self.runtime.api
        self._guard = self.runtime.guard(HandleKind.GRAPH, api.new_graph(), api.delete_graph, label)

    @property
    def guard(self):
        return self._guard

    @property
    def released(self) -> bool:
        return self._guard.released

    def new_operation(self, op_type: str, name: str) -> "OperationDescription":
        """Start building an operation; finish it with ``finish()``."""
        return OperationDescription(self, op_type, name)

    def operation_by_name(self, name: str) -> Optional["Operation"]:
        """The operation called ``name``, or None."""
        with self._guard.borrow() as handle:
            oper = self.runtime.api.graph_operation_by_name(handle, name)
        return Operation(self, oper) if oper else None

    def operations(self) -> list["Operation"]:
        """All operations in creation order."""
        api = self.runtime.api
        result = []
        with self._guard.borrow() as handle:
            position = 0
            while True:
                oper, position = api.graph_next_operation(handle, position)
                if not oper:
                    break
                result.append(Operation(self, oper))
        return result

    def __iter__(self) -> Iterator["Operation"]:
        return iter(self.operations())

    def __contains__(self, name: str) -> bool:
        return self.operation_by_name(name) is not None

    def _check_owned(self, item: Union["Operation", "Output"]) -> None:
        operation = item.operation if isinstance(item, Output) else item
        if operation.graph is not self:
            raise BindingError(
                f"operation '{operation.name}' belongs to a different graph",
                suggestions=["Build every input in the graph that consumes it"],
            )

    def tensor_shape(self, output: "Output") -> Optional[Shape]:
        """
        Statically known shape of an output.

        Returns:
            Shape with -1 for unknown dimensions, or None if the rank
            is unknown.
        """
        self._check_owned(output)
        with self._guard.borrow() as handle:
            dims = self.runtime.invoke(
                "TF_GraphGetTensorShape",
                self.runtime.api.graph_get_tensor_shape,
                handle,
                output.native,
            )
        return None if dims is None else Shape(dims)

    def add_gradients(
        self,
        ys: Sequence["Output"],
        xs: Sequence["Output"],
        dx: Optional[Sequence["Output"]] = None,
    ) -> list[Optional["Output"]]:
        """
        Add the partial derivatives of ``sum(ys)`` with respect to ``xs``.

        Args:
            ys: Outputs to differentiate.
            xs: Outputs to differentiate with respect to.
            dx: Initial gradients for ``ys``; ones if None.

        Returns:
            One Output per ``x``, or None where ``ys`` does not depend on it.
        """
        for item in list(ys) + list(xs) + list(dx or []):
            self._check_owned(item)

        with self._guard.borrow_mut() as handle:
            grads = self.runtime.invoke(
                "TF_AddGradients",
                self.runtime.api.add_gradients,
                handle,
                [y.native for y in ys],
                [x.native for x in xs],
                [d.native for d in dx] if dx is not None else None,
            )
        return [Output(Operation(self, g[0]), g[1]) if g else None for g in grads]

    def to_graph_def(self) -> bytes:
        """Serialized GraphDef produced by the native runtime."""
        api = self.runtime.api
        with self._guard.borrow() as handle:
            buffer = self.runtime.invoke(
                "TF_GraphToGraphDef",
                api.graph_to_graph_def,
                handle,
                discard=api.delete_buffer,
            )
        with self.runtime.guard(HandleKind.BUFFER, buffer, api.delete_buffer, "GraphDef") as guard:
            with guard.borrow() as raw:
                return api.buffer_data(raw)

    def release(self) -> None:
        """
        Free the native graph.

        Raises:
            HandleInUse: While sessions or descriptions built on it are live.
        """
        self._guard.release()

    def __enter__(self) -> "Graph":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._guard.released:
            self.release()

    def __repr__(self) -> str:
        state = "released" if self._guard.released else "live"
        return f"<Graph {self._guard.label} {state}>"


class Operation:
    """Non-owning reference to an operation inside a Graph."""

    def __init__(self, graph: Graph, handle: int):
        self.graph = graph
        self._handle = handle

    @property
    def handle(self) -> int:
        if self.graph.released:
            raise UseAfterRelease(HandleKind.GRAPH, self.graph.guard.key[1], self.graph.guard.label)
        return self._handle

    def _query(self, method):
        with self.graph.guard.borrow():
            return method(self._handle)

    @property
    def name(self) -> str:
        return self._query(self.graph.runtime.api.operation_name)

    @property
    def op_type(self) -> str:
        return self._query(self.graph.runtime.api.operation_op_type)

    @property
    def device(self) -> str:
        return self._query(self.graph.runtime.api.operation_device)

    @property
    def num_inputs(self) -> int:
        return self._query(self.graph.runtime.api.operation_num_inputs)

    @property
    def num_outputs(self) -> int:
        return self._query(self.graph.runtime.api.operation_num_outputs)

    def output(self, index: int) -> "Output":
        """
        Output endpoint ``index`` of this operation.

        Raises:
            IndexError: If the operation has no such output.
        """
        count = self.num_outputs
        if not 0 <= index < count:
            raise IndexError(f"operation '{self.name}' has {count} outputs, asked for {index}")
        return Output(self, index)

    @property
    def outputs(self) -> list["Output"]:
        return [Output(self, i) for i in range(self.num_outputs)]

    def __eq__(self, other) -> bool:
        return (
            isinstance(other, Operation)
            and other.graph is self.graph
            and other._handle == self._handle
        )

    def __hash__(self) -> int:
        return hash((id(self.graph), self._handle))

    def __repr__(self) -> str:
        if self.graph.released:
            return f"<Operation {self._handle:#x} (graph released)>"
        return f"<Operation '{self.name}' type={self.op_type}>"


@dataclass(frozen=True)
class Output:
    """Output endpoint ``index`` of ``operation``."""

    operation: Operation
    index: int = 0

    @property
    def graph(self) -> Graph:
        return self.operation.graph

    @property
    def native(self) -> tuple[int, int]:
        return (self.operation.handle, self.index)

    @property
    def dtype(self) -> DataType:
        with self.graph.guard.borrow():
            return DataType(self.graph.runtime.api.operation_output_type(self.native))

    @property
    def name(self) -> str:
        return f"{self.operation.name}:{self.index}"

    def shape(self) -> Optional[Shape]:
        return self.graph.tensor_shape(self)

    def __repr__(self) -> str:
        if self.graph.released:
            return f"<Output {self.index} (graph released)>"
        return f"<Output '{self.name}'>"


class OperationDescription:
    """
    Operation under construction.

    Not thread-safe: every setter takes the description exclusively.
    Unfinished descriptions keep their graph from being released.
    """

    def __init__(self, graph: Graph, op_type: str, name: str):
        self.graph = graph
        self.op_type = op_type
        self.name = name
        api = graph.runtime.api
        with graph.guard.borrow_mut() as graph_handle:
            desc = api.new_operation(graph_handle, op_type, name)
        self._guard = graph.runtime.guard(
            HandleKind.OPERATION_DESCRIPTION,
            desc,
            api.abandon_operation,
            f"{op_type} '{name}'",
            depends_on=[graph.guard.key],
        )
        self._api = api

    @property
    def guard(self):
        return self._guard

    def set_device(self, device: str) -> "OperationDescription":
        with self._guard.borrow_mut() as desc:
            self._api.set_device(desc, device)
        return self

    def add_input(self, output: Output) -> "OperationDescription":
        self.graph._check_owned(output)
        with self._guard.borrow_mut() as desc:
            self._api.add_input(desc, output.native)
        return self

    def add_input_list(self, outputs: Sequence[Output]) -> "OperationDescription":
        for output in outputs:
            self.graph._check_owned(output)
        with self._guard.borrow_mut() as desc:
            self._api.add_input_list(desc, [o.native for o in outputs])
        return self

    def add_control_input(self, operation: Operation) -> "OperationDescription":
        self.graph._check_owned(operation)
        with self._guard.borrow_mut() as desc:
            self._api.add_control_input(desc, operation.handle)
        return self

    def set_attr_type(self, name: str, dtype: DataType) -> "OperationDescription":
        with self._guard.borrow_mut() as desc:
            self._api.set_attr_type(desc, name, int(dtype))
        return self

    def set_attr_int(self, name: str, value: int) -> "OperationDescription":
        with self._guard.borrow_mut() as desc:
            self._api.set_attr_int(desc, name, value)
        return self

    def set_attr_float(self, name: str, value: float) -> "OperationDescription":
        with self._guard.borrow_mut() as desc:
            self._api.set_attr_float(desc, name, value)
        return self

    def set_attr_bool(self, name: str, value: bool) -> "OperationDescription":
        with self._guard.borrow_mut() as desc:
            self._api.set_attr_bool(desc, name, value)
        return self

    def set_attr_string(self, name: str, value: Union[str, bytes]) -> "OperationDescription":
        if isinstance(value, str):
            value = value.encode("utf-8")
        with self._guard.borrow_mut() as desc:
            self._api.set_attr_string(desc, name, value)
        return self

    def set_attr_shape(self, name: str, shape: Optional[Sequence[int]]) -> "OperationDescription":
        """``None`` sets an unknown-rank shape; -1 marks an unknown dimension."""
        dims = None if shape is None else list(Shape.of(shape))
        with self._guard.borrow_mut() as desc:
            self._api.set_attr_shape(desc, name, dims)
        return self

    def set_attr_tensor(self, name: str, value) -> "OperationDescription":
        """
        Set a tensor attribute from a Tensor or anything ``to_tensor`` accepts.

        The native runtime copies the value.
        """
        if isinstance(value, Tensor):
            self._set_tensor(name, value)
        else:
            from .marshal import to_tensor

            with to_tensor(value, runtime=self.graph.runtime) as tensor:
                self._set_tensor(name, tensor)
        return self

    def _set_tensor(self, name: str, tensor: Tensor) -> None:
        with self._guard.borrow_mut() as desc, tensor.guard.borrow() as raw:
            self.graph.runtime.invoke(
                "TF_SetAttrTensor", self._api.set_attr_tensor, desc, name, raw
            )

    def finish(self) -> Operation:
        """
        Add the operation to the graph.

        The description is used up whether or not this succeeds.

        Raises:
            NativeCallFailure: If the runtime rejects the operation.
        """
        with self.graph.guard.borrow_mut() as graph_handle:
            desc = self._guard.consume()
            oper = self.graph.runtime.invoke(
                "TF_FinishOperation", self._api.finish_operation, desc
            )
        logger.debug(
            "added %s '%s' to graph %#x",
            self.op_type,
            self.name,
            graph_handle,
            extra={"kind": "GRAPH", "handle": graph_handle, "call": "TF_FinishOperation"},
        )
        return Operation(self.graph, oper)

    def abandon(self) -> None:
        """Drop the description without adding it to the graph."""
        self._guard.release()

    def __repr__(self) -> str:
        state = "finished" if self._guard.released else "open"
        return f"<OperationDescription {self.op_type} '{self.name}' {state}>"
