# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Loopback Kernel Registry

Maps operation types to their definitions for the loopback runtime:
input arity, output type rules, shape rules, the NumPy kernel, and the
symbolic gradient. Uses a decorator-based registration pattern so new
operation types are added without touching the executor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from ..core.types import DataType, StatusCode, to_numpy_dtype

# Signature: (ctx, inputs, attrs) -> list of output arrays
KernelFunc = Callable[[Any, List[Any], Dict[str, Any]], List[np.ndarray]]

# Signature: (attrs, input dtypes) -> output dtypes
TypeFunc = Callable[[Dict[str, Any], List[int]], List[int]]

# Signature: (attrs, input shapes) -> output shapes (None = unknown)
ShapeFunc = Callable[[Dict[str, Any], List[Optional[list]]], List[Optional[list]]]

# Signature: (builder, node, grad) -> one gradient endpoint (or None) per input
GradientFunc = Callable[[Any, Any, Any], List[Any]]


class KernelError(Exception):
    """Raised inside the loopback runtime; becomes a status, never escapes."""

    def __init__(self, code: StatusCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(frozen=True)
class VariableRef:
    """Reference-typed input: the variable itself rather than its value."""

    name: str
    dtype: int


@dataclass
class OpDef:
    """Definition of one operation type."""

    op_type: str
    kernel: KernelFunc
    output_types: TypeFunc
    num_inputs: Optional[int] = None
    ref_inputs: tuple = ()
    required_attrs: tuple = ()
    shape_fn: Optional[ShapeFunc] = None
    defaults: Dict[str, Any] = field(default_factory=dict)


class KernelRegistry:
    """
    Registry for loopback operation definitions and gradients.

    Example:
        @KernelRegistry.register("Neg", num_inputs=1, output_types=same_as_input)
        def neg_kernel(ctx, inputs, attrs):
            return [np.negative(inputs[0])]

        op_def = KernelRegistry.get("Neg")
    """

    _registry: Dict[str, OpDef] = {}
    _gradients: Dict[str, GradientFunc] = {}

    @classmethod
    def register(
        cls,
        op_type: str,
        output_types: TypeFunc,
        num_inputs: Optional[int] = None,
        ref_inputs: Sequence[int] = (),
        required_attrs: Sequence[str] = (),
        shape_fn: Optional[ShapeFunc] = None,
        defaults: Optional[Dict[str, Any]] = None,
        aliases: Optional[List[str]] = None,
    ) -> Callable[[KernelFunc], KernelFunc]:
        """
        Decorator to register an operation kernel.

        Args:
            op_type: Operation type name (e.g., "MatMul").
            output_types: Rule computing output dtypes.
            num_inputs: Exact number of data inputs, or None for any.
            ref_inputs: Input positions that take a variable by reference.
            required_attrs: Attributes that must be set before finishing.
            shape_fn: Static shape rule.
            defaults: Attribute defaults.
            aliases: Alternative names for the operation.
        """

        def decorator(func: KernelFunc) -> KernelFunc:
            op_def = OpDef(
                op_type=op_type,
                kernel=func,
                output_types=output_types,
                num_inputs=num_inputs,
                ref_inputs=tuple(ref_inputs),
                required_attrs=tuple(required_attrs),
                shape_fn=shape_fn,
                defaults=dict(defaults or {}),
            )
            cls._registry[op_type] = op_def
            for alias in aliases or []:
                cls._registry[alias] = op_def
            return func

        return decorator

    @classmethod
    def register_gradient(cls, *op_types: str) -> Callable[[GradientFunc], GradientFunc]:
        """Decorator to register the symbolic gradient of operation types."""

        def decorator(func: GradientFunc) -> GradientFunc:
            for op_type in op_types:
                cls._gradients[op_type] = func
            return func

        return decorator

    @classmethod
    def get(cls, op_type: str) -> OpDef:
        """
        Get the definition of an operation type.

        Raises:
            KeyError: If operation type not registered.
        """
        if op_type not in cls._registry:
            raise KeyError(f"Op type not registered '{op_type}'")
        return cls._registry[op_type]

    @classmethod
    def is_supported(cls, op_type: str) -> bool:
        return op_type in cls._registry

    @classmethod
    def get_gradient(cls, op_type: str) -> Optional[GradientFunc]:
        return cls._gradients.get(op_type)

    @classmethod
    def list_operators(cls) -> List[str]:
        """List all registered operation types."""
        return sorted(cls._registry.keys())


# ----------------------------------------------------------------------
# Type and shape rules
# ----------------------------------------------------------------------


def attr_dtype(key: str) -> TypeFunc:
    def rule(attrs, input_types):
        return [int(attrs[key])]

    return rule


def same_as_input(attrs, input_types):
    return [input_types[0]]


def binary_same_type(attrs, input_types):
    if input_types[0] != input_types[1]:
        raise KernelError(
            StatusCode.INVALID_ARGUMENT,
            "Inputs must have the same type, got "
            f"{DataType(input_types[0]).name} and {DataType(input_types[1]).name}",
        )
    return [input_types[0]]


def no_outputs(attrs, input_types):
    return []


def same_shape(attrs, shapes):
    return [shapes[0]]


def broadcast_shape(attrs, shapes):
    a, b = shapes
    if a is None or b is None:
        return [None]
    if any(d < 0 for d in a) or any(d < 0 for d in b):
        return [None]
    try:
        return [list(np.broadcast_shapes(tuple(a), tuple(b)))]
    except ValueError as e:
        raise KernelError(StatusCode.INVALID_ARGUMENT, f"Incompatible shapes: {a} vs. {b}") from e


def attr_shape(key: str) -> ShapeFunc:
    def rule(attrs, shapes):
        return [attrs.get(key)]

    return rule


def matmul_shape(attrs, shapes):
    a, b = shapes
    if a is None or b is None:
        return [None]
    if len(a) != 2 or len(b) != 2:
        raise KernelError(StatusCode.INVALID_ARGUMENT, "MatMul inputs must be rank 2")
    rows = a[1] if attrs.get("transpose_a") else a[0]
    inner_a = a[0] if attrs.get("transpose_a") else a[1]
    inner_b = b[1] if attrs.get("transpose_b") else b[0]
    cols = b[0] if attrs.get("transpose_b") else b[1]
    if inner_a >= 0 and inner_b >= 0 and inner_a != inner_b:
        raise KernelError(
            StatusCode.INVALID_ARGUMENT,
            f"Matrix size-incompatible: In[0]: {a}, In[1]: {b}",
        )
    return [[rows, cols]]


def _np(dtype: int) -> np.dtype:
    np_dtype = to_numpy_dtype(DataType(dtype))
    if np_dtype is None:
        raise KernelError(
            StatusCode.UNIMPLEMENTED,
            f"Data type {DataType(dtype).name} is not supported by the loopback runtime",
        )
    return np_dtype


# ----------------------------------------------------------------------
# Kernels
# ----------------------------------------------------------------------


@KernelRegistry.register(
    "Placeholder",
    output_types=attr_dtype("dtype"),
    num_inputs=0,
    required_attrs=("dtype",),
    shape_fn=attr_shape("shape"),
)
def placeholder_kernel(ctx, inputs, attrs):
    raise KernelError(
        StatusCode.INVALID_ARGUMENT,
        f"You must feed a value for placeholder tensor '{ctx.op_name}' "
        f"with dtype {DataType(attrs['dtype']).name.lower()}",
    )


def _const_shape(attrs, shapes):
    return [list(attrs["value"].shape)]


@KernelRegistry.register(
    "Const",
    output_types=attr_dtype("dtype"),
    num_inputs=0,
    required_attrs=("value", "dtype"),
    shape_fn=_const_shape,
)
def const_kernel(ctx, inputs, attrs):
    return [attrs["value"]]


@KernelRegistry.register(
    "Identity", output_types=same_as_input, num_inputs=1, shape_fn=same_shape
)
def identity_kernel(ctx, inputs, attrs):
    return [inputs[0]]


@KernelRegistry.register(
    "AddV2",
    output_types=binary_same_type,
    num_inputs=2,
    shape_fn=broadcast_shape,
    aliases=["Add"],
)
def add_kernel(ctx, inputs, attrs):
    return [np.add(inputs[0], inputs[1])]


@KernelRegistry.register(
    "Sub", output_types=binary_same_type, num_inputs=2, shape_fn=broadcast_shape
)
def sub_kernel(ctx, inputs, attrs):
    return [np.subtract(inputs[0], inputs[1])]


@KernelRegistry.register(
    "Mul", output_types=binary_same_type, num_inputs=2, shape_fn=broadcast_shape
)
def mul_kernel(ctx, inputs, attrs):
    return [np.multiply(inputs[0], inputs[1])]


@KernelRegistry.register(
    "Neg", output_types=same_as_input, num_inputs=1, shape_fn=same_shape
)
def neg_kernel(ctx, inputs, attrs):
    return [np.negative(inputs[0])]


@KernelRegistry.register(
    "Square", output_types=same_as_input, num_inputs=1, shape_fn=same_shape
)
def square_kernel(ctx, inputs, attrs):
    return [np.square(inputs[0])]


@KernelRegistry.register(
    "MatMul",
    output_types=binary_same_type,
    num_inputs=2,
    shape_fn=matmul_shape,
    defaults={"transpose_a": False, "transpose_b": False},
)
def matmul_kernel(ctx, inputs, attrs):
    a, b = inputs
    if a.ndim != 2 or b.ndim != 2:
        raise KernelError(
            StatusCode.INVALID_ARGUMENT,
            f"In[0] and In[1] must be matrices, got shapes {a.shape} and {b.shape}",
        )
    if attrs.get("transpose_a"):
        a = a.T
    if attrs.get("transpose_b"):
        b = b.T
    if a.shape[1] != b.shape[0]:
        raise KernelError(
            StatusCode.INVALID_ARGUMENT,
            f"Matrix size-incompatible: In[0]: {list(a.shape)}, In[1]: {list(b.shape)}",
        )
    return [np.matmul(a, b)]


@KernelRegistry.register(
    "OnesLike", output_types=same_as_input, num_inputs=1, shape_fn=same_shape
)
def ones_like_kernel(ctx, inputs, attrs):
    return [np.ones_like(inputs[0])]


@KernelRegistry.register(
    "ZerosLike", output_types=same_as_input, num_inputs=1, shape_fn=same_shape
)
def zeros_like_kernel(ctx, inputs, attrs):
    return [np.zeros_like(inputs[0])]


@KernelRegistry.register(
    "Cast",
    output_types=attr_dtype("DstT"),
    num_inputs=1,
    required_attrs=("DstT",),
    shape_fn=same_shape,
)
def cast_kernel(ctx, inputs, attrs):
    return [inputs[0].astype(_np(attrs["DstT"]))]


@KernelRegistry.register("NoOp", output_types=no_outputs, num_inputs=0)
def no_op_kernel(ctx, inputs, attrs):
    return []


@KernelRegistry.register(
    "VariableV2",
    output_types=attr_dtype("dtype"),
    num_inputs=0,
    required_attrs=("dtype", "shape"),
    shape_fn=attr_shape("shape"),
    defaults={"container": b"", "shared_name": b""},
)
def variable_kernel(ctx, inputs, attrs):
    return [ctx.read_variable(VariableRef(ctx.op_name, int(attrs["dtype"])))]


@KernelRegistry.register(
    "Assign",
    output_types=same_as_input,
    num_inputs=2,
    ref_inputs=(0,),
    shape_fn=lambda attrs, shapes: [shapes[1]],
    defaults={"validate_shape": True, "use_locking": True},
)
def assign_kernel(ctx, inputs, attrs):
    ref, value = inputs
    value = np.array(value, dtype=_np(ref.dtype), copy=True)
    declared = ctx.variable_shape(ref)
    if attrs.get("validate_shape") and declared is not None and (
        list(value.shape) != list(declared)
    ):
        raise KernelError(
            StatusCode.INVALID_ARGUMENT,
            f"Assign requires shapes of both tensors to match. "
            f"lhs shape= {list(declared)} rhs shape= {list(value.shape)}",
        )
    ctx.write_variable(ref, value)
    return [value]


@KernelRegistry.register(
    "ApplyGradientDescent",
    output_types=same_as_input,
    num_inputs=3,
    ref_inputs=(0,),
    shape_fn=lambda attrs, shapes: [shapes[2]],
    defaults={"use_locking": False},
)
def apply_gradient_descent_kernel(ctx, inputs, attrs):
    ref, alpha, delta = inputs
    var = ctx.read_variable(ref)
    updated = (var - alpha * delta).astype(var.dtype)
    ctx.write_variable(ref, updated)
    return [updated]


@KernelRegistry.register(
    "ApplyAdadelta",
    output_types=same_as_input,
    num_inputs=7,
    ref_inputs=(0, 1, 2),
    shape_fn=lambda attrs, shapes: [shapes[6]],
    defaults={"use_locking": False},
)
def apply_adadelta_kernel(ctx, inputs, attrs):
    var_ref, accum_ref, update_ref, lr, rho, epsilon, grad = inputs
    var = ctx.read_variable(var_ref)
    accum = ctx.read_variable(accum_ref)
    accum_update = ctx.read_variable(update_ref)

    accum = rho * accum + (1 - rho) * np.square(grad)
    update = np.sqrt(accum_update + epsilon) / np.sqrt(accum + epsilon) * grad
    accum_update = rho * accum_update + (1 - rho) * np.square(update)
    var = var - lr * update

    ctx.write_variable(accum_ref, accum.astype(grad.dtype))
    ctx.write_variable(update_ref, accum_update.astype(grad.dtype))
    ctx.write_variable(var_ref, var.astype(grad.dtype))
    return [ctx.read_variable(var_ref)]


# ----------------------------------------------------------------------
# Gradients
# ----------------------------------------------------------------------


@KernelRegistry.register_gradient("Identity")
def _identity_grad(builder, node, grad):
    return [grad]


@KernelRegistry.register_gradient("Add", "AddV2")
def _add_grad(builder, node, grad):
    return [grad, grad]


@KernelRegistry.register_gradient("Sub")
def _sub_grad(builder, node, grad):
    return [grad, builder.add("Neg", [grad])]


@KernelRegistry.register_gradient("Mul")
def _mul_grad(builder, node, grad):
    x, y = node.inputs
    return [builder.add("Mul", [grad, y]), builder.add("Mul", [grad, x])]


@KernelRegistry.register_gradient("Neg")
def _neg_grad(builder, node, grad):
    return [builder.add("Neg", [grad])]


@KernelRegistry.register_gradient("Square")
def _square_grad(builder, node, grad):
    x = node.inputs[0]
    return [builder.add("Mul", [grad, builder.add("AddV2", [x, x])])]


@KernelRegistry.register_gradient("MatMul")
def _matmul_grad(builder, node, grad):
    a, b = node.inputs
    ta = bool(node.attrs.get("transpose_a"))
    tb = bool(node.attrs.get("transpose_b"))
    if not ta and not tb:
        grad_a = builder.add("MatMul", [grad, b], {"transpose_b": True})
        grad_b = builder.add("MatMul", [a, grad], {"transpose_a": True})
    elif not ta and tb:
        grad_a = builder.add("MatMul", [grad, b])
        grad_b = builder.add("MatMul", [grad, a], {"transpose_a": True})
    elif ta and not tb:
        grad_a = builder.add("MatMul", [b, grad], {"transpose_b": True})
        grad_b = builder.add("MatMul", [a, grad])
    else:
        grad_a = builder.add(
            "MatMul", [b, grad], {"transpose_a": True, "transpose_b": True}
        )
        grad_b = builder.add(
            "MatMul", [grad, a], {"transpose_a": True, "transpose_b": True}
        )
    return [grad_a, grad_b]


@KernelRegistry.register_gradient("Cast")
def _cast_grad(builder, node, grad):
    source = builder.output_type(node.inputs[0])
    return [builder.add("Cast", [grad], {"DstT": source})]


@KernelRegistry.register_gradient("OnesLike", "ZerosLike")
def _constant_like_grad(builder, node, grad):
    return [None]
