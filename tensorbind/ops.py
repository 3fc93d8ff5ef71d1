# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Operation helpers.

Each helper adds one operation to the scope's graph and returns its
first Output (or the Operation itself for operations without outputs).
Inputs may be Outputs, Operations (their first output), or host values,
which become constants of the other operand's type.

Example:
    scope = Scope.new_root_scope()
    x = ops.placeholder(scope.with_op_name("x"), DataType.Float, shape=[2])
    y = ops.multiply(scope, x, 2.0)
"""

from typing import Any, Callable, Optional, Sequence, Union

from .core.types import DataType
from .graph import Operation, OperationDescription, Output
from .scope import Scope
from .tensor import Tensor, resolve_dtype

OutputLike = Union[Output, Operation]


def as_output(value: OutputLike) -> Output:
    if isinstance(value, Output):
        return value
    if isinstance(value, Operation):
        return value.output(0)
    raise TypeError(f"expected an Output or Operation, got {type(value).__name__}")


def build(
    scope: Scope,
    op_type: str,
    inputs: Sequence[OutputLike] = (),
    configure: Optional[Callable[[OperationDescription], Any]] = None,
    control_inputs: Sequence[Operation] = (),
    name: Optional[str] = None,
) -> Operation:
    """
    Add one operation of ``op_type`` to the scope's graph.

    Args:
        scope: Supplies the name, device and control dependencies.
        op_type: Registered operation type.
        inputs: Data inputs, in order.
        configure: Sets attributes on the description before it is finished.
        control_inputs: Extra operations to wait for.
        name: Fully qualified name; taken from the scope if None.

    Raises:
        NativeCallFailure: If the runtime rejects the operation.
    """
    name = name or scope.get_unique_name_for_op(op_type)
    desc = scope.graph.new_operation(op_type, name)
    try:
        if scope.device:
            desc.set_device(scope.device)
        for value in inputs:
            desc.add_input(as_output(value))
        for operation in list(scope.control_dependencies) + list(control_inputs):
            desc.add_control_input(operation)
        if configure is not None:
            configure(desc)
    except Exception:
        desc.abandon()
        raise
    return desc.finish()


def _operand(scope: Scope, value: Any, like: Optional[Output]) -> Output:
    if isinstance(value, (Output, Operation)):
        return as_output(value)
    dtype = like.dtype if like is not None else None
    return constant(scope.without_op_name(), value, dtype=dtype)


def _binary(scope: Scope, op_type: str, x: Any, y: Any) -> Output:
    x_is_value = not isinstance(x, (Output, Operation))
    if x_is_value:
        y = _operand(scope, y, None)
        x = _operand(scope, x, y)
    else:
        x = _operand(scope, x, None)
        y = _operand(scope, y, x)
    return build(scope, op_type, [x, y]).output(0)


def placeholder(
    scope: Scope, dtype: DataType, shape: Optional[Sequence[int]] = None
) -> Output:
    """Input fed at run time. ``shape=None`` leaves the rank unknown."""
    dtype = resolve_dtype(dtype)

    def configure(desc):
        desc.set_attr_type("dtype", dtype)
        if shape is not None:
            desc.set_attr_shape("shape", shape)

    return build(scope, "Placeholder", configure=configure).output(0)


def constant(scope: Scope, value: Any, dtype=None) -> Output:
    """
    Constant holding ``value``.

    Args:
        value: Tensor, NumPy array or Python value.
        dtype: Element type; inferred from ``value`` if None.
    """
    runtime = scope.graph.runtime

    def configure(desc):
        if isinstance(value, Tensor):
            tensor_dtype = value.dtype
            desc.set_attr_tensor("value", value)
        else:
            from .marshal import to_tensor

            with to_tensor(value, dtype=dtype, runtime=runtime) as tensor:
                tensor_dtype = tensor.dtype
                desc.set_attr_tensor("value", tensor)
        desc.set_attr_type("dtype", tensor_dtype)

    return build(scope, "Const", configure=configure).output(0)


def identity(scope: Scope, x: OutputLike) -> Output:
    return build(scope, "Identity", [x]).output(0)


def add(scope: Scope, x: Any, y: Any) -> Output:
    """Element-wise ``x + y`` with broadcasting."""
    return _binary(scope, "AddV2", x, y)


def subtract(scope: Scope, x: Any, y: Any) -> Output:
    """Element-wise ``x - y`` with broadcasting."""
    return _binary(scope, "Sub", x, y)


def multiply(scope: Scope, x: Any, y: Any) -> Output:
    """Element-wise ``x * y`` with broadcasting."""
    return _binary(scope, "Mul", x, y)


def neg(scope: Scope, x: OutputLike) -> Output:
    return build(scope, "Neg", [x]).output(0)


def square(scope: Scope, x: OutputLike) -> Output:
    return build(scope, "Square", [x]).output(0)


def matmul(
    scope: Scope,
    a: OutputLike,
    b: OutputLike,
    transpose_a: bool = False,
    transpose_b: bool = False,
) -> Output:
    """Matrix product of two rank-2 inputs."""

    def configure(desc):
        desc.set_attr_bool("transpose_a", transpose_a)
        desc.set_attr_bool("transpose_b", transpose_b)

    return build(scope, "MatMul", [a, b], configure=configure).output(0)


def zeros_like(scope: Scope, x: OutputLike) -> Output:
    return build(scope, "ZerosLike", [x]).output(0)


def ones_like(scope: Scope, x: OutputLike) -> Output:
    return build(scope, "OnesLike", [x]).output(0)


def cast(scope: Scope, x: OutputLike, dtype) -> Output:
    """Convert ``x`` to ``dtype``."""
    dtype = resolve_dtype(dtype)
    return build(
        scope, "Cast", [x], configure=lambda desc: desc.set_attr_type("DstT", dtype)
    ).output(0)


def assign(
    scope: Scope, ref: OutputLike, value: Any, validate_shape: bool = True
) -> Output:
    """Store ``value`` into the variable ``ref``; outputs the new value."""
    ref = as_output(ref)
    value = _operand(scope, value, ref)
    return build(
        scope,
        "Assign",
        [ref, value],
        configure=lambda desc: desc.set_attr_bool("validate_shape", validate_shape),
    ).output(0)


def no_op(scope: Scope, control_inputs: Sequence[Operation] = ()) -> Operation:
    """Operation that does nothing once all ``control_inputs`` have run."""
    return build(scope, "NoOp", control_inputs=control_inputs)


def group(scope: Scope, operations: Sequence[OutputLike]) -> Operation:
    """NoOp depending on every operation in ``operations``."""
    ops = [o.operation if isinstance(o, Output) else o for o in operations]
    return no_op(scope, control_inputs=ops)


__all__ = [
    "as_output",
    "build",
    "placeholder",
    "constant",
    "identity",
    "add",
    "subtract",
    "multiply",
    "neg",
    "square",
    "matmul",
    "zeros_like",
    "ones_like",
    "cast",
    "assign",
    "no_op",
    "group",
]
