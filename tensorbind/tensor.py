# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Tensor - host handle on a native tensor.

A Tensor owns one native tensor handle through a LifetimeGuard. Its
dtype, shape and byte size are read from the native side once, when
the Tensor is created, and checked against each other.
"""

import weakref
from typing import Optional

import numpy as np

from .core.types import (
    DataType,
    HandleKind,
    Shape,
    dtype_size,
    dtype_to_string,
    from_numpy_dtype,
)
from .errors import ShapeMismatch, UnsupportedDtype


class Tensor:
    """
    Owned native tensor.

    Attributes:
        dtype: Element type.
        shape: Fully defined shape.
        nbytes: Size of the native buffer in bytes.
        buffer_owner: "host" when the buffer is a NumPy array lent to the
            runtime without copying, "native" when the runtime allocated it.

    Thread Safety: reads take a shared borrow; release is exclusive.

    Example:
        t = Tensor.from_numpy(np.arange(6, dtype=np.float32).reshape(2, 3))
        assert t.shape == (2, 3)
        values = t.numpy()
        t.release()
    """

    def __init__(self, runtime, handle: int, buffer_owner: str = "native", label: str = ""):
        """
        Take ownership of a native tensor handle.

        Raises:
            UnsupportedDtype: If the native type code is unknown.
            ShapeMismatch: If the byte size disagrees with the shape.
        """
        api = runtime.api
        self.runtime = runtime
        self.buffer_owner = buffer_owner
        self._guard = runtime.guard(HandleKind.TENSOR, handle, api.delete_tensor, label or "Tensor")
        self._views = weakref.WeakSet()
        self._guard.blockers = self._views

        code = api.tensor_type(handle)
        dims = api.tensor_dims(handle)
        nbytes = api.tensor_byte_size(handle)
        try:
            self.dtype = DataType(code)
        except ValueError:
            self._guard.release()
            raise UnsupportedDtype(f"TF_DataType({code})", reason="unknown type code") from None

        self._shape = Shape(dims)
        self.nbytes = nbytes

        itemsize = dtype_size(self.dtype)
        if itemsize and self._shape.numel() * itemsize != nbytes:
            self._guard.release()
            raise ShapeMismatch(
                f"native tensor holds {nbytes} bytes, shape {tuple(dims)} "
                f"of {dtype_to_string(self.dtype)} needs {self._shape.numel() * itemsize}",
                shape=tuple(dims),
                expected_bytes=self._shape.numel() * itemsize,
                actual_bytes=nbytes,
            )

    @classmethod
    def from_numpy(cls, array, dtype=None, runtime=None) -> "Tensor":
        """See ``tensorbind.marshal.to_tensor``."""
        from .marshal import to_tensor

        return to_tensor(array, dtype=dtype, runtime=runtime)

    @classmethod
    def from_buffer(cls, data, shape, dtype, runtime=None) -> "Tensor":
        """See ``tensorbind.marshal.tensor_from_buffer``."""
        from .marshal import tensor_from_buffer

        return tensor_from_buffer(data, shape, dtype, runtime=runtime)

    @property
    def shape(self) -> tuple:
        return self._shape.as_tuple()

    @property
    def ndim(self) -> int:
        return self._shape.rank()

    @property
    def size(self) -> int:
        return self._shape.numel()

    @property
    def guard(self):
        return self._guard

    @property
    def handle(self) -> int:
        return self._guard.handle

    @property
    def released(self) -> bool:
        return self._guard.released

    @property
    def live_views(self) -> int:
        return len(self._views)

    def numpy(self, dtype=None) -> np.ndarray:
        """Copy the values into a new NumPy array."""
        from .marshal import to_numpy

        return to_numpy(self, dtype=dtype)

    def view(self) -> np.ndarray:
        """Read-only array over the native buffer. Keeps this Tensor alive."""
        from .marshal import view

        return view(self)

    def release(self) -> None:
        """
        Free the native tensor now.

        Raises:
            HandleInUse: While views returned by ``view()`` are alive.
            DoubleRelease: If already released.
        """
        self._guard.release()

    def __array__(self, dtype=None, copy=None) -> np.ndarray:
        return self.numpy(dtype=dtype)

    def __enter__(self) -> "Tensor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._guard.released:
            self.release()

    def __repr__(self) -> str:
        state = "released" if self._guard.released else self.buffer_owner
        return (
            f"Tensor(shape={self.shape}, dtype={dtype_to_string(self.dtype)}, "
            f"nbytes={self.nbytes}, {state})"
        )


def resolve_dtype(dtype) -> Optional[DataType]:
    """Accept a DataType, a type code, or anything ``np.dtype`` accepts."""
    if dtype is None or isinstance(dtype, DataType):
        return dtype
    if isinstance(dtype, int) and not isinstance(dtype, bool):
        try:
            return DataType(dtype)
        except ValueError:
            raise UnsupportedDtype(f"TF_DataType({dtype})", reason="unknown type code") from None
    try:
        np_dtype = np.dtype(dtype)
    except TypeError as e:
        raise UnsupportedDtype(str(dtype), reason="not a dtype") from e
    resolved = from_numpy_dtype(np_dtype)
    if resolved is None:
        raise UnsupportedDtype(str(np_dtype), reason="no native equivalent")
    return resolved
