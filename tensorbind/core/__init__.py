# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""tensorbind Core Module"""

from .types import (
    DataType,
    StatusCode,
    Shape,
    HandleKind,
    dtype_size,
    dtype_to_string,
    to_numpy_dtype,
    from_numpy_dtype,
)

__all__ = [
    "DataType",
    "StatusCode",
    "Shape",
    "HandleKind",
    "dtype_size",
    "dtype_to_string",
    "to_numpy_dtype",
    "from_numpy_dtype",
]
