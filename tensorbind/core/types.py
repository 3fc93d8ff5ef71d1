# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
tensorbind Core Types

Host-side mirrors of the native C API enums and the small value types
shared by every layer of the binding.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Iterable, Optional, Union

import numpy as np


class DataType(IntEnum):
    """Tensor element types, valued by their TF_DataType codes."""

    Float = 1
    Double = 2
    Int32 = 3
    UInt8 = 4
    Int16 = 5
    Int8 = 6
    String = 7
    Complex64 = 8
    Int64 = 9
    Bool = 10
    QInt8 = 11
    QUInt8 = 12
    QInt32 = 13
    BFloat16 = 14
    QInt16 = 15
    QUInt16 = 16
    UInt16 = 17
    Complex128 = 18
    Half = 19
    Resource = 20
    Variant = 21
    UInt32 = 22
    UInt64 = 23


# Types whose buffers NumPy can address directly.
_NUMPY_TYPES = {
    DataType.Float: np.dtype(np.float32),
    DataType.Double: np.dtype(np.float64),
    DataType.Int32: np.dtype(np.int32),
    DataType.UInt8: np.dtype(np.uint8),
    DataType.Int16: np.dtype(np.int16),
    DataType.Int8: np.dtype(np.int8),
    DataType.Complex64: np.dtype(np.complex64),
    DataType.Int64: np.dtype(np.int64),
    DataType.Bool: np.dtype(np.bool_),
    DataType.UInt16: np.dtype(np.uint16),
    DataType.Complex128: np.dtype(np.complex128),
    DataType.Half: np.dtype(np.float16),
    DataType.UInt32: np.dtype(np.uint32),
    DataType.UInt64: np.dtype(np.uint64),
}

# Keyed by (kind, itemsize) so byte order does not matter.
_FROM_NUMPY = {(v.kind, v.itemsize): k for k, v in _NUMPY_TYPES.items()}

# Fixed element sizes in bytes; variable-size types report 0.
_SIZES = {
    DataType.QInt8: 1,
    DataType.QUInt8: 1,
    DataType.QInt32: 4,
    DataType.BFloat16: 2,
    DataType.QInt16: 2,
    DataType.QUInt16: 2,
    DataType.String: 0,
    DataType.Resource: 0,
    DataType.Variant: 0,
}
_SIZES.update({k: v.itemsize for k, v in _NUMPY_TYPES.items()})


def dtype_size(dtype: DataType) -> int:
    """Get the size in bytes for a data type (0 for variable-size types)."""
    return _SIZES.get(dtype, 0)


def dtype_to_string(dtype: DataType) -> str:
    """Get string representation of data type."""
    return dtype.name.lower()


def to_numpy_dtype(dtype: DataType) -> Optional[np.dtype]:
    """NumPy dtype in native byte order for ``dtype``, or None if unmapped."""
    return _NUMPY_TYPES.get(DataType(dtype))


def from_numpy_dtype(dtype) -> Optional[DataType]:
    """DataType for a NumPy dtype (any byte order), or None if unmapped."""
    np_dtype = np.dtype(dtype)
    return _FROM_NUMPY.get((np_dtype.kind, np_dtype.itemsize))


class StatusCode(IntEnum):
    """Result codes reported by the native runtime (TF_Code)."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16

    @classmethod
    def from_native(cls, code: int) -> "StatusCode":
        """Map a raw code, folding values this build does not know to UNKNOWN."""
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN


class HandleKind(Enum):
    """
    Kinds of native resources tracked by the handle registry.

    The value is the teardown rank: lower ranks are released first.
    """

    SESSION = 0
    TENSOR = 1
    BUFFER = 2
    OPERATION_DESCRIPTION = 3
    SESSION_OPTIONS = 4
    GRAPH = 5
    STATUS = 6

    @property
    def teardown_rank(self) -> int:
        return self.value


@dataclass
class Shape:
    """Represents tensor dimensions. Negative sizes are unknown."""

    dims: list[int] = field(default_factory=list)

    @classmethod
    def of(cls, value: Union["Shape", Iterable[int], None]) -> "Shape":
        """Coerce a Shape, tuple or list into a Shape."""
        if isinstance(value, Shape):
            return Shape(list(value.dims))
        if value is None:
            return Shape()
        return Shape([int(d) for d in value])

    def rank(self) -> int:
        """Get number of dimensions."""
        return len(self.dims)

    def numel(self) -> int:
        """Get total number of elements (1 for a scalar, -1 if unknown)."""
        result = 1
        for d in self.dims:
            if d < 0:
                return -1
            result *= d
        return result

    def is_fully_defined(self) -> bool:
        """Check that every dimension is known."""
        return all(d >= 0 for d in self.dims)

    def as_tuple(self) -> tuple:
        return tuple(self.dims)

    def __getitem__(self, idx: int) -> int:
        return self.dims[idx]

    def __len__(self) -> int:
        return len(self.dims)

    def __iter__(self):
        return iter(self.dims)

    def __repr__(self) -> str:
        return f"Shape({self.dims})"
