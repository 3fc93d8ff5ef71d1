# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
tensorbind Native Module

The C-API surface the binding calls through, and its implementations.
"""

from .base import NativeAPI, NativeOutput
from .ctypes_api import TensorFlowCAPI, find_library
from .kernels import KernelError, KernelRegistry
from .loopback import InvalidHandleFault, LoopbackCAPI
from .registry import list_native_apis, load_native_api, register_native_api

__all__ = [
    "NativeAPI",
    "NativeOutput",
    "TensorFlowCAPI",
    "find_library",
    "KernelError",
    "KernelRegistry",
    "InvalidHandleFault",
    "LoopbackCAPI",
    "list_native_apis",
    "load_native_api",
    "register_native_api",
]
