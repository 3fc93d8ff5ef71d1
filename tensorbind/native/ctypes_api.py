# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
TensorFlow C API through ctypes

Loads ``libtensorflow`` and exposes the TF_* entry points the binding
uses behind the NativeAPI interface. Pointers cross this module as
plain integers; structs (TF_Output, TF_Buffer) and arrays are built
and unpacked here so nothing above this layer touches ctypes.
"""

import ctypes
import ctypes.util
import itertools
import logging
import sys
import threading
from typing import Optional, Sequence

import numpy as np

from ..errors import LibraryNotFound
from .base import NativeAPI, NativeOutput

logger = logging.getLogger("tensorbind.native.tensorflow")

_c_void_p = ctypes.c_void_p
_c_char_p = ctypes.c_char_p
_c_int = ctypes.c_int
_c_int64 = ctypes.c_int64
_c_size_t = ctypes.c_size_t


class TF_Output(ctypes.Structure):
    _fields_ = [("oper", _c_void_p), ("index", _c_int)]


_BufferDeallocator = ctypes.CFUNCTYPE(None, _c_void_p, _c_size_t)


class TF_Buffer(ctypes.Structure):
    _fields_ = [
        ("data", _c_void_p),
        ("length", _c_size_t),
        ("data_deallocator", _BufferDeallocator),
    ]


_TensorDeallocator = ctypes.CFUNCTYPE(None, _c_void_p, _c_size_t, _c_void_p)

# (restype, argtypes) for every entry point used.
_SIGNATURES = {
    "TF_Version": (_c_char_p, []),
    "TF_NewStatus": (_c_void_p, []),
    "TF_DeleteStatus": (None, [_c_void_p]),
    "TF_GetCode": (_c_int, [_c_void_p]),
    "TF_Message": (_c_char_p, [_c_void_p]),
    "TF_NewGraph": (_c_void_p, []),
    "TF_DeleteGraph": (None, [_c_void_p]),
    "TF_NewOperation": (_c_void_p, [_c_void_p, _c_char_p, _c_char_p]),
    "TF_SetDevice": (None, [_c_void_p, _c_char_p]),
    "TF_AddInput": (None, [_c_void_p, TF_Output]),
    "TF_AddInputList": (None, [_c_void_p, ctypes.POINTER(TF_Output), _c_int]),
    "TF_AddControlInput": (None, [_c_void_p, _c_void_p]),
    "TF_SetAttrType": (None, [_c_void_p, _c_char_p, _c_int]),
    "TF_SetAttrInt": (None, [_c_void_p, _c_char_p, _c_int64]),
    "TF_SetAttrFloat": (None, [_c_void_p, _c_char_p, ctypes.c_float]),
    "TF_SetAttrBool": (None, [_c_void_p, _c_char_p, ctypes.c_ubyte]),
    "TF_SetAttrString": (None, [_c_void_p, _c_char_p, _c_void_p, _c_size_t]),
    "TF_SetAttrShape": (None, [_c_void_p, _c_char_p, ctypes.POINTER(_c_int64), _c_int]),
    "TF_SetAttrTensor": (None, [_c_void_p, _c_char_p, _c_void_p, _c_void_p]),
    "TF_FinishOperation": (_c_void_p, [_c_void_p, _c_void_p]),
    "TF_GraphOperationByName": (_c_void_p, [_c_void_p, _c_char_p]),
    "TF_GraphNextOperation": (_c_void_p, [_c_void_p, ctypes.POINTER(_c_size_t)]),
    "TF_OperationName": (_c_char_p, [_c_void_p]),
    "TF_OperationOpType": (_c_char_p, [_c_void_p]),
    "TF_OperationDevice": (_c_char_p, [_c_void_p]),
    "TF_OperationNumInputs": (_c_int, [_c_void_p]),
    "TF_OperationNumOutputs": (_c_int, [_c_void_p]),
    "TF_OperationOutputType": (_c_int, [TF_Output]),
    "TF_GraphGetTensorNumDims": (_c_int, [_c_void_p, TF_Output, _c_void_p]),
    "TF_GraphGetTensorShape": (
        None,
        [_c_void_p, TF_Output, ctypes.POINTER(_c_int64), _c_int, _c_void_p],
    ),
    "TF_AddGradients": (
        None,
        [
            _c_void_p,
            ctypes.POINTER(TF_Output),
            _c_int,
            ctypes.POINTER(TF_Output),
            _c_int,
            ctypes.POINTER(TF_Output),
            _c_void_p,
            ctypes.POINTER(TF_Output),
        ],
    ),
    "TF_NewBuffer": (_c_void_p, []),
    "TF_DeleteBuffer": (None, [_c_void_p]),
    "TF_GraphToGraphDef": (None, [_c_void_p, _c_void_p, _c_void_p]),
    "TF_NewSessionOptions": (_c_void_p, []),
    "TF_DeleteSessionOptions": (None, [_c_void_p]),
    "TF_SetTarget": (None, [_c_void_p, _c_char_p]),
    "TF_SetConfig": (None, [_c_void_p, _c_void_p, _c_size_t, _c_void_p]),
    "TF_NewSession": (_c_void_p, [_c_void_p, _c_void_p, _c_void_p]),
    "TF_CloseSession": (None, [_c_void_p, _c_void_p]),
    "TF_DeleteSession": (None, [_c_void_p, _c_void_p]),
    "TF_SessionRun": (
        None,
        [
            _c_void_p,
            _c_void_p,
            ctypes.POINTER(TF_Output),
            ctypes.POINTER(_c_void_p),
            _c_int,
            ctypes.POINTER(TF_Output),
            ctypes.POINTER(_c_void_p),
            _c_int,
            ctypes.POINTER(_c_void_p),
            _c_int,
            _c_void_p,
            _c_void_p,
        ],
    ),
    "TF_AllocateTensor": (_c_void_p, [_c_int, ctypes.POINTER(_c_int64), _c_int, _c_size_t]),
    "TF_NewTensor": (
        _c_void_p,
        [
            _c_int,
            ctypes.POINTER(_c_int64),
            _c_int,
            _c_void_p,
            _c_size_t,
            _TensorDeallocator,
            _c_void_p,
        ],
    ),
    "TF_DeleteTensor": (None, [_c_void_p]),
    "TF_TensorType": (_c_int, [_c_void_p]),
    "TF_NumDims": (_c_int, [_c_void_p]),
    "TF_Dim": (_c_int64, [_c_void_p, _c_int]),
    "TF_TensorByteSize": (_c_size_t, [_c_void_p]),
    "TF_TensorData": (_c_void_p, [_c_void_p]),
}

_DEFAULT_NAMES = {
    "linux": ["libtensorflow.so.2", "libtensorflow.so"],
    "darwin": ["libtensorflow.2.dylib", "libtensorflow.dylib"],
    "win32": ["tensorflow.dll"],
}


def find_library(library_path: Optional[str] = None) -> ctypes.CDLL:
    """
    Load libtensorflow.

    Args:
        library_path: Explicit path; the system search path is used if None.

    Raises:
        LibraryNotFound: If no candidate could be loaded.
    """
    if library_path:
        candidates = [library_path]
    else:
        candidates = []
        found = ctypes.util.find_library("tensorflow")
        if found:
            candidates.append(found)
        candidates.extend(_DEFAULT_NAMES.get(sys.platform, _DEFAULT_NAMES["linux"]))

    errors = []
    for candidate in candidates:
        try:
            lib = ctypes.CDLL(candidate)
        except OSError as e:
            errors.append(f"{candidate}: {e}")
            continue
        logger.debug("loaded %s", candidate)
        return lib

    raise LibraryNotFound(", ".join(candidates), reason="; ".join(errors) or None)


def _outputs_array(outputs: Sequence[NativeOutput]):
    array = (TF_Output * len(outputs))()
    for i, (oper, index) in enumerate(outputs):
        array[i].oper = oper
        array[i].index = index
    return array


def _dims_array(dims: Sequence[int]):
    return (_c_int64 * len(dims))(*[int(d) for d in dims])


def _text(value: Optional[bytes]) -> str:
    return value.decode("utf-8") if value else ""


class TensorFlowCAPI(NativeAPI):
    """
    NativeAPI backed by a real libtensorflow.

    Zero-copy tensors pin their NumPy array in ``_pinned`` until the
    library calls the deallocator.
    """

    def __init__(self, library_path: Optional[str] = None):
        self._lib = find_library(library_path)
        for symbol, (restype, argtypes) in _SIGNATURES.items():
            try:
                func = getattr(self._lib, symbol)
            except AttributeError as e:
                raise LibraryNotFound(
                    library_path or "system search path",
                    reason=f"symbol {symbol} missing",
                ) from e
            func.restype = restype
            func.argtypes = argtypes

        self._pinned: dict[int, np.ndarray] = {}
        self._pin_lock = threading.Lock()
        self._tokens = itertools.count(1)
        self._deallocator = _TensorDeallocator(self._release_pinned)

    def _release_pinned(self, data, length, arg) -> None:
        with self._pin_lock:
            self._pinned.pop(arg, None)

    @property
    def name(self) -> str:
        return "tensorflow"

    def is_available(self) -> bool:
        return self._lib is not None

    def version(self) -> str:
        return _text(self._lib.TF_Version())

    # Status

    def new_status(self) -> int:
        return self._lib.TF_NewStatus() or 0

    def delete_status(self, status: int) -> None:
        self._lib.TF_DeleteStatus(status)

    def get_code(self, status: int) -> int:
        return int(self._lib.TF_GetCode(status))

    def message(self, status: int) -> str:
        return _text(self._lib.TF_Message(status))

    # Graph construction

    def new_graph(self) -> int:
        return self._lib.TF_NewGraph() or 0

    def delete_graph(self, graph: int) -> None:
        self._lib.TF_DeleteGraph(graph)

    def new_operation(self, graph: int, op_type: str, name: str) -> int:
        return self._lib.TF_NewOperation(graph, op_type.encode(), name.encode()) or 0

    def abandon_operation(self, desc: int) -> None:
        # The C API can only free a description by finishing it.
        logger.warning("operation description %#x abandoned; its memory is not reclaimed", desc)

    def set_device(self, desc: int, device: str) -> None:
        self._lib.TF_SetDevice(desc, device.encode())

    def add_input(self, desc: int, output: NativeOutput) -> None:
        self._lib.TF_AddInput(desc, TF_Output(output[0], output[1]))

    def add_input_list(self, desc: int, outputs: Sequence[NativeOutput]) -> None:
        self._lib.TF_AddInputList(desc, _outputs_array(outputs), len(outputs))

    def add_control_input(self, desc: int, operation: int) -> None:
        self._lib.TF_AddControlInput(desc, operation)

    def set_attr_type(self, desc: int, name: str, dtype: int) -> None:
        self._lib.TF_SetAttrType(desc, name.encode(), int(dtype))

    def set_attr_int(self, desc: int, name: str, value: int) -> None:
        self._lib.TF_SetAttrInt(desc, name.encode(), int(value))

    def set_attr_float(self, desc: int, name: str, value: float) -> None:
        self._lib.TF_SetAttrFloat(desc, name.encode(), float(value))

    def set_attr_bool(self, desc: int, name: str, value: bool) -> None:
        self._lib.TF_SetAttrBool(desc, name.encode(), 1 if value else 0)

    def set_attr_string(self, desc: int, name: str, value: bytes) -> None:
        buf = ctypes.create_string_buffer(value, len(value))
        self._lib.TF_SetAttrString(desc, name.encode(), buf, len(value))

    def set_attr_shape(self, desc: int, name: str, dims: Optional[Sequence[int]]) -> None:
        if dims is None:
            self._lib.TF_SetAttrShape(desc, name.encode(), None, -1)
        else:
            self._lib.TF_SetAttrShape(desc, name.encode(), _dims_array(dims), len(dims))

    def set_attr_tensor(self, desc: int, name: str, tensor: int, status: int) -> None:
        self._lib.TF_SetAttrTensor(desc, name.encode(), tensor, status)

    def finish_operation(self, desc: int, status: int) -> int:
        return self._lib.TF_FinishOperation(desc, status) or 0

    # Graph inspection

    def graph_operation_by_name(self, graph: int, name: str) -> int:
        return self._lib.TF_GraphOperationByName(graph, name.encode()) or 0

    def graph_next_operation(self, graph: int, position: int) -> tuple[int, int]:
        pos = _c_size_t(position)
        oper = self._lib.TF_GraphNextOperation(graph, ctypes.byref(pos))
        return oper or 0, pos.value

    def operation_name(self, operation: int) -> str:
        return _text(self._lib.TF_OperationName(operation))

    def operation_op_type(self, operation: int) -> str:
        return _text(self._lib.TF_OperationOpType(operation))

    def operation_device(self, operation: int) -> str:
        return _text(self._lib.TF_OperationDevice(operation))

    def operation_num_inputs(self, operation: int) -> int:
        return int(self._lib.TF_OperationNumInputs(operation))

    def operation_num_outputs(self, operation: int) -> int:
        return int(self._lib.TF_OperationNumOutputs(operation))

    def operation_output_type(self, output: NativeOutput) -> int:
        return int(self._lib.TF_OperationOutputType(TF_Output(output[0], output[1])))

    def graph_get_tensor_shape(
        self, graph: int, output: NativeOutput, status: int
    ) -> Optional[list[int]]:
        out = TF_Output(output[0], output[1])
        num_dims = self._lib.TF_GraphGetTensorNumDims(graph, out, status)
        if self.get_code(status) != 0 or num_dims < 0:
            return None
        dims = (_c_int64 * num_dims)()
        self._lib.TF_GraphGetTensorShape(graph, out, dims, num_dims, status)
        return [int(d) for d in dims]

    def add_gradients(
        self,
        graph: int,
        ys: Sequence[NativeOutput],
        xs: Sequence[NativeOutput],
        dx: Optional[Sequence[NativeOutput]],
        status: int,
    ) -> list[Optional[NativeOutput]]:
        dy = (TF_Output * len(xs))()
        self._lib.TF_AddGradients(
            graph,
            _outputs_array(ys),
            len(ys),
            _outputs_array(xs),
            len(xs),
            _outputs_array(dx) if dx is not None else None,
            status,
            dy,
        )
        return [(d.oper, d.index) if d.oper else None for d in dy]

    def graph_to_graph_def(self, graph: int, status: int) -> int:
        buffer = self._lib.TF_NewBuffer()
        self._lib.TF_GraphToGraphDef(graph, buffer, status)
        if self.get_code(status) != 0:
            self._lib.TF_DeleteBuffer(buffer)
            return 0
        return buffer or 0

    def buffer_data(self, buffer: int) -> bytes:
        contents = ctypes.cast(buffer, ctypes.POINTER(TF_Buffer)).contents
        if not contents.data:
            return b""
        return ctypes.string_at(contents.data, contents.length)

    def delete_buffer(self, buffer: int) -> None:
        self._lib.TF_DeleteBuffer(buffer)

    # Sessions

    def new_session_options(self) -> int:
        return self._lib.TF_NewSessionOptions() or 0

    def delete_session_options(self, options: int) -> None:
        self._lib.TF_DeleteSessionOptions(options)

    def set_target(self, options: int, target: str) -> None:
        self._lib.TF_SetTarget(options, target.encode())

    def set_config(self, options: int, proto: bytes, status: int) -> None:
        buf = ctypes.create_string_buffer(proto, len(proto))
        self._lib.TF_SetConfig(options, buf, len(proto), status)

    def new_session(self, graph: int, options: int, status: int) -> int:
        return self._lib.TF_NewSession(graph, options, status) or 0

    def close_session(self, session: int, status: int) -> None:
        self._lib.TF_CloseSession(session, status)

    def delete_session(self, session: int, status: int) -> None:
        self._lib.TF_DeleteSession(session, status)

    def session_run(
        self,
        session: int,
        inputs: Sequence[tuple[NativeOutput, int]],
        outputs: Sequence[NativeOutput],
        targets: Sequence[int],
        status: int,
    ) -> list[int]:
        input_values = (_c_void_p * len(inputs))(*[tensor for _, tensor in inputs])
        output_values = (_c_void_p * len(outputs))()
        target_opers = (_c_void_p * len(targets))(*targets)
        self._lib.TF_SessionRun(
            session,
            None,
            _outputs_array([output for output, _ in inputs]),
            input_values,
            len(inputs),
            _outputs_array(outputs),
            output_values,
            len(outputs),
            target_opers,
            len(targets),
            None,
            status,
        )
        return [value or 0 for value in output_values]

    # Tensors

    def allocate_tensor(self, dtype: int, dims: Sequence[int], nbytes: int) -> int:
        return self._lib.TF_AllocateTensor(int(dtype), _dims_array(dims), len(dims), nbytes) or 0

    def new_tensor_from_array(
        self, dtype: int, dims: Sequence[int], array: np.ndarray
    ) -> int:
        token = next(self._tokens)
        with self._pin_lock:
            self._pinned[token] = array
        handle = self._lib.TF_NewTensor(
            int(dtype),
            _dims_array(dims),
            len(dims),
            array.ctypes.data,
            array.nbytes,
            self._deallocator,
            token,
        )
        if not handle:
            self._release_pinned(None, 0, token)
            return 0
        return handle

    def delete_tensor(self, tensor: int) -> None:
        self._lib.TF_DeleteTensor(tensor)

    def tensor_type(self, tensor: int) -> int:
        return int(self._lib.TF_TensorType(tensor))

    def num_dims(self, tensor: int) -> int:
        return int(self._lib.TF_NumDims(tensor))

    def dim(self, tensor: int, index: int) -> int:
        return int(self._lib.TF_Dim(tensor, index))

    def tensor_byte_size(self, tensor: int) -> int:
        return int(self._lib.TF_TensorByteSize(tensor))

    def tensor_data(self, tensor: int) -> int:
        return self._lib.TF_TensorData(tensor) or 0
