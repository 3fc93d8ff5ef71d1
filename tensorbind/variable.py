# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Variables - graph state that persists across session runs.

A Variable is a VariableV2 operation plus the Assign operation that
initializes it. Values live in the session, so every new session must
run the initializers before reading a variable.

Example:
    x = (
        Variable.builder()
        .const_initial_value(np.float32(3.0))
        .build(scope.with_op_name("x"))
    )
    session.run(targets=[x.initializer])
"""

from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

from . import ops
from .core.types import DataType, Shape
from .graph import Operation, Output
from .scope import Scope
from .tensor import resolve_dtype


@dataclass(frozen=True)
class Variable:
    """
    A built variable.

    Attributes:
        name: Name of the VariableV2 operation.
        output: The variable's value (a reference output).
        initializer: Operation assigning the initial value.
        shape: Declared shape, or None if the rank is unknown.
        dtype: Element type.
    """

    name: str
    output: Output
    initializer: Operation
    shape: Optional[Shape]
    dtype: DataType

    @staticmethod
    def builder() -> "VariableBuilder":
        return VariableBuilder()


class VariableBuilder:
    """Fluent builder for Variable."""

    def __init__(self):
        self._initial_value: Optional[Output] = None
        self._const_value: Any = None
        self._const_dtype = None
        self._shape: Optional[Shape] = None
        self._dtype: Optional[DataType] = None

    def initial_value(self, value: Union[Output, Operation]) -> "VariableBuilder":
        """Initialize from an existing graph output."""
        self._initial_value = ops.as_output(value)
        self._const_value = None
        return self

    def const_initial_value(self, value: Any, dtype=None) -> "VariableBuilder":
        """Initialize from a host value, stored as a Const in the graph."""
        self._const_value = value
        self._const_dtype = dtype
        self._initial_value = None
        return self

    def shape(self, shape: Optional[Sequence[int]]) -> "VariableBuilder":
        self._shape = None if shape is None else Shape.of(shape)
        return self

    def data_type(self, dtype) -> "VariableBuilder":
        self._dtype = resolve_dtype(dtype)
        return self

    def build(self, scope: Scope) -> Variable:
        """
        Add the variable and its initializer to the scope's graph.

        Raises:
            ValueError: If no initial value was given.
            NativeCallFailure: If the runtime rejects an operation.
        """
        if self._initial_value is None and self._const_value is None:
            raise ValueError("a variable needs an initial value")

        name = scope.get_unique_name_for_op("Variable")
        inner = scope.without_op_name().nested(name)

        initial = self._initial_value
        if initial is None:
            initial = ops.constant(inner, self._const_value, dtype=self._const_dtype)

        dtype = self._dtype or initial.dtype
        shape = self._shape
        if shape is None:
            shape = scope.graph.tensor_shape(initial)

        def configure(desc):
            desc.set_attr_type("dtype", dtype)
            desc.set_attr_shape("shape", None if shape is None else list(shape))

        variable_op = ops.build(scope, "VariableV2", configure=configure, name=name)
        output = variable_op.output(0)
        initializer = ops.assign(inner, output, initial).operation

        return Variable(
            name=name,
            output=output,
            initializer=initializer,
            shape=shape,
            dtype=dtype,
        )
