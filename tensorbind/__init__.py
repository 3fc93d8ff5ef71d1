# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
tensorbind: Safe Python bindings for the TensorFlow C API

Owns native graphs, sessions, tensors and statuses through lifetime
guards, turns native statuses into exceptions, and marshals NumPy
arrays to and from native tensor buffers.

Example:
    import numpy as np
    import tensorbind as tb
    from tensorbind import ops

    scope = tb.Scope.new_root_scope()
    x = ops.placeholder(scope.with_op_name("x"), tb.DataType.Float, shape=[2])
    y = ops.multiply(scope, x, 3.0)
    with tb.Session(scope.graph) as session:
        (result,) = session.run([y], feeds={x: np.array([1, 2], np.float32)})
        print(result.numpy())
"""

__version__ = "0.1.0"
__author__ = "Wahyu Ardiansyah"

from .core.types import DataType, HandleKind, Shape, StatusCode

from .config import BindingConfig
from .errors import (
    BindingError,
    NativeCallFailure,
    ShapeMismatch,
    UnsupportedDtype,
    LossyConversion,
    LifetimeError,
    DoubleRelease,
    UseAfterRelease,
    UnknownHandle,
    HandleInUse,
    HandleLeak,
    ConfigurationError,
    LibraryNotFound,
)

from .handles import HandleRecord, HandleRegistry
from .guard import LifetimeGuard
from .status import call_with_status, check_status
from .runtime import Runtime, get_runtime, reset_runtime, set_runtime
from .tensor import Tensor
from .marshal import tensor_from_buffer, to_numpy, to_tensor

from .graph import Graph, Operation, OperationDescription, Output
from .session import Session, SessionOptions, SessionRunArgs
from .scope import Scope
from .variable import Variable, VariableBuilder
from . import ops
from . import train

from .observability import Verbosity, configure_logging, set_verbosity


def get_version() -> str:
    """Get tensorbind version."""
    return __version__


def is_native_available() -> bool:
    """Check if libtensorflow can be loaded on this host."""
    from .native import find_library

    try:
        find_library()
    except LibraryNotFound:
        return False
    return True


__all__ = [
    # Version
    "__version__",
    "get_version",
    "is_native_available",
    # Types
    "DataType",
    "HandleKind",
    "Shape",
    "StatusCode",
    # Config
    "BindingConfig",
    # Errors
    "BindingError",
    "NativeCallFailure",
    "ShapeMismatch",
    "UnsupportedDtype",
    "LossyConversion",
    "LifetimeError",
    "DoubleRelease",
    "UseAfterRelease",
    "UnknownHandle",
    "HandleInUse",
    "HandleLeak",
    "ConfigurationError",
    "LibraryNotFound",
    # Lifetimes
    "HandleRecord",
    "HandleRegistry",
    "LifetimeGuard",
    "call_with_status",
    "check_status",
    "Runtime",
    "get_runtime",
    "set_runtime",
    "reset_runtime",
    # Values
    "Tensor",
    "to_tensor",
    "to_numpy",
    "tensor_from_buffer",
    # Graphs
    "Graph",
    "Operation",
    "OperationDescription",
    "Output",
    "Session",
    "SessionOptions",
    "SessionRunArgs",
    "Scope",
    "Variable",
    "VariableBuilder",
    "ops",
    "train",
    # Observability
    "Verbosity",
    "configure_logging",
    "set_verbosity",
]
