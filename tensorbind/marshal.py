# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Type Marshal - host arrays to native tensor buffers and back.

The native layout is a dense row-major buffer in native byte order,
tagged with a DataType and a fully defined shape.

Rules:
- A C-contiguous, aligned array already in the target dtype and native
  byte order is lent to the runtime without copying.
- Anything else is copied once and converted (byte swap, contiguity,
  dtype). Floating-point narrowing rounds to the nearest value but must
  not overflow; every other conversion must keep each value exactly.
  Otherwise LossyConversion is raised.
- Nested sequences must be rectangular (ShapeMismatch otherwise).
- Raw buffers must hold exactly numel(shape) * itemsize bytes.
"""

import ctypes
import logging
from typing import Optional, Sequence, Union

import numpy as np

from .core.types import DataType, Shape, dtype_to_string, from_numpy_dtype, to_numpy_dtype
from .errors import LossyConversion, ShapeMismatch, UnsupportedDtype
from .tensor import Tensor, resolve_dtype

logger = logging.getLogger("tensorbind.marshal")

# NumPy kinds with no fixed-size native layout.
_UNSUPPORTED_KINDS = {
    "O": "object arrays hold Python references",
    "U": "unicode strings are variable size",
    "S": "byte strings are variable size",
    "V": "structured and void dtypes have no native equivalent",
    "M": "datetimes have no native equivalent",
    "m": "timedeltas have no native equivalent",
}


def _runtime(runtime):
    if runtime is not None:
        return runtime
    from .runtime import get_runtime

    return get_runtime()


def _host_dtype(dtype: DataType) -> np.dtype:
    np_dtype = to_numpy_dtype(dtype)
    if np_dtype is None:
        raise UnsupportedDtype(dtype_to_string(dtype), reason="no fixed-size host layout")
    return np_dtype


def _check_host_array(array: np.ndarray) -> DataType:
    reason = _UNSUPPORTED_KINDS.get(array.dtype.kind)
    source = from_numpy_dtype(array.dtype) if reason is None else None
    if source is None:
        raise UnsupportedDtype(str(array.dtype), reason=reason or "no native equivalent")
    return source


def convert(array: np.ndarray, target: np.dtype) -> np.ndarray:
    """
    Convert ``array`` to ``target``, refusing conversions that lose values.

    Float and complex targets of lower precision round, but finite
    values must stay finite.

    Returns a new C-contiguous array in native byte order.

    Raises:
        LossyConversion: If some value cannot be represented exactly.
    """
    target = np.dtype(target).newbyteorder("=")
    source_name = str(array.dtype)

    if array.dtype.kind == "c" and target.kind != "c":
        if np.any(array.imag != 0):
            raise LossyConversion(source_name, str(target), "values have imaginary parts")
        array = array.real

    if array.dtype.kind in "fc" and target.kind in "biu":
        if not np.all(np.isfinite(array)):
            raise LossyConversion(source_name, str(target), "values are not finite")

    with np.errstate(all="ignore"):
        converted = np.ascontiguousarray(array.astype(target))
        if array.dtype.kind in "fc" and target.kind in "fc":
            # Rounding to the nearest representable float is accepted.
            if not np.array_equal(np.isfinite(converted), np.isfinite(array)):
                raise LossyConversion(source_name, str(target), "values overflow the target")
        elif array.dtype.newbyteorder("=") != target:
            back = converted.astype(array.dtype)
            equal_nan = array.dtype.kind in "fc"
            if not np.array_equal(back, array, equal_nan=equal_nan):
                raise LossyConversion(
                    source_name, str(target), "some values are out of range or not exact"
                )
    return converted


def _as_array(value) -> np.ndarray:
    try:
        return np.asarray(value)
    except ValueError as e:
        raise ShapeMismatch(f"nested sequence is not rectangular: {e}") from e


def _zero_copy(array: np.ndarray, np_dtype: np.dtype) -> bool:
    return (
        array.dtype == np_dtype
        and array.dtype.isnative
        and array.flags.c_contiguous
        and array.flags.aligned
    )


def _copy_into_native(runtime, dtype: DataType, array: np.ndarray, label: str) -> Tensor:
    api = runtime.api
    dims = list(array.shape)
    handle = api.allocate_tensor(int(dtype), dims, array.nbytes)
    tensor = Tensor(runtime, handle, buffer_owner="native", label=label)
    if array.nbytes:
        with tensor.guard.borrow_mut() as h:
            ctypes.memmove(api.tensor_data(h), array.ctypes.data, array.nbytes)
    return tensor


def to_tensor(value, dtype=None, runtime=None, label: str = "") -> Tensor:
    """
    Marshal a host value into a new Tensor.

    Args:
        value: NumPy array, NumPy scalar, or nested Python sequence/scalar.
        dtype: Target DataType (or NumPy dtype); the value's own type if None.
        runtime: Runtime to allocate in; the default runtime if None.
        label: Name for logs and errors.

    Returns:
        Tensor whose shape equals the value's shape.

    Raises:
        UnsupportedDtype: For object, string or otherwise unmapped dtypes.
        LossyConversion: If ``dtype`` cannot represent the values.
        ShapeMismatch: If a nested sequence is ragged.
    """
    runtime = _runtime(runtime)
    target = resolve_dtype(dtype)

    array = _as_array(value)
    if not isinstance(value, (np.ndarray, np.generic)) and target is not None:
        np_dtype = _host_dtype(target)
        if array.dtype.kind in "biufc":
            array = convert(array, np_dtype)
        else:
            # Python integers too large for int64 arrive as objects.
            try:
                array = np.array(value, dtype=np_dtype)
            except (OverflowError, ValueError) as e:
                raise LossyConversion(str(array.dtype), str(np_dtype), str(e)) from e

    source = _check_host_array(array)
    target = target or source
    np_dtype = _host_dtype(target)

    if _zero_copy(array, np_dtype):
        handle = runtime.api.new_tensor_from_array(int(target), list(array.shape), array)
        tensor = Tensor(runtime, handle, buffer_owner="host", label=label)
    else:
        tensor = _copy_into_native(runtime, target, convert(array, np_dtype), label)

    logger.debug(
        "marshaled %s%s into %r",
        array.dtype,
        array.shape,
        tensor,
        extra={"kind": "TENSOR", "handle": tensor.guard.handle},
    )
    return tensor


def tensor_from_buffer(
    data: Union[bytes, bytearray, memoryview, np.ndarray],
    shape: Sequence[int],
    dtype,
    runtime=None,
    label: str = "",
) -> Tensor:
    """
    Build a Tensor from raw bytes in native layout.

    Args:
        data: Row-major element bytes in native byte order.
        shape: Fully defined shape.
        dtype: Element type.

    Raises:
        ShapeMismatch: If ``len(data)`` is not numel(shape) * itemsize.
            No tensor is created.
        UnsupportedDtype: If ``dtype`` has no fixed-size layout.
    """
    target = resolve_dtype(dtype)
    np_dtype = _host_dtype(target)
    shape = Shape.of(shape)
    if not shape.is_fully_defined():
        raise ShapeMismatch(
            f"shape {shape.as_tuple()} has unknown dimensions", shape=shape.as_tuple()
        )

    if isinstance(data, np.ndarray):
        raw = np.ascontiguousarray(data).reshape(-1).view(np.uint8)
    else:
        raw = np.frombuffer(data, dtype=np.uint8)
    expected = shape.numel() * np_dtype.itemsize
    if raw.nbytes != expected:
        raise ShapeMismatch(
            f"buffer holds {raw.nbytes} bytes, shape {shape.as_tuple()} "
            f"of {dtype_to_string(target)} needs {expected}",
            shape=shape.as_tuple(),
            expected_bytes=expected,
            actual_bytes=raw.nbytes,
        )

    if expected:
        array = raw.view(np_dtype).reshape(shape.as_tuple())
    else:
        array = np.empty(shape.as_tuple(), dtype=np_dtype)
    return _copy_into_native(_runtime(runtime), target, np.ascontiguousarray(array), label)


class _NativeBuffer:
    """Exposes a tensor's native buffer to NumPy and keeps the tensor alive."""

    def __init__(self, tensor: Tensor, address: int, np_dtype: np.dtype):
        self.tensor = tensor
        self.__array_interface__ = {
            "shape": tensor.shape,
            "typestr": np_dtype.str,
            "data": (address, True),
            "version": 3,
        }

    def __repr__(self) -> str:
        return f"<view of {self.tensor!r}>"


def _native_array(tensor: Tensor, np_dtype: np.dtype, handle: int) -> np.ndarray:
    api = tensor.runtime.api
    if tensor.nbytes == 0:
        return np.empty(tensor.shape, dtype=np_dtype)
    return np.asarray(_NativeBuffer(tensor, api.tensor_data(handle), np_dtype))


def to_numpy(tensor: Tensor, dtype=None, copy: bool = True) -> np.ndarray:
    """
    Marshal a Tensor back into a NumPy array.

    Args:
        tensor: Source tensor.
        dtype: Target type; the tensor's own type if None.
        copy: Return an independent array. ``copy=False`` returns the
            read-only view from ``view()`` and cannot change the dtype.

    Raises:
        UnsupportedDtype: If the tensor's type has no host layout.
        LossyConversion: If ``dtype`` cannot represent the values.
    """
    np_dtype = _host_dtype(tensor.dtype)
    target: Optional[DataType] = resolve_dtype(dtype)

    if not copy:
        if target is not None and target != tensor.dtype:
            raise ValueError("a view cannot change the dtype; pass copy=True")
        return view(tensor)

    with tensor.guard.borrow() as handle:
        result = np.array(_native_array(tensor, np_dtype, handle), copy=True)

    if target is not None and target != tensor.dtype:
        result = convert(result, _host_dtype(target))
    return result


def view(tensor: Tensor) -> np.ndarray:
    """
    Read-only NumPy view of the tensor's native buffer.

    The view (and anything derived from it) keeps the Tensor alive, and
    the Tensor refuses explicit release while any such view exists.
    """
    np_dtype = _host_dtype(tensor.dtype)
    with tensor.guard.borrow() as handle:
        array = _native_array(tensor, np_dtype, handle)
    if isinstance(array.base, _NativeBuffer):
        tensor._views.add(array.base)
    array.flags.writeable = False
    return array
