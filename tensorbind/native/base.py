# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Native API Base Class

This module defines the abstract C-API surface the binding talks to,
one method per TensorFlow C entry point it uses.

Conventions:
- Handles are plain integers; 0 is the null handle.
- An output endpoint is a ``(operation_handle, index)`` tuple.
- Calls that can fail take a status handle as their last argument and
  report failure only through it. Their outputs must not be trusted
  until the status has been checked.
- Each handle-returning method states who owns the result.

Thread Safety: implementations must be as thread-safe as the C API
documents (graphs and sessions are internally synchronized; operation
descriptions are not).
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

import numpy as np

NativeOutput = tuple[int, int]


class NativeAPI(ABC):
    """
    Abstract base class for native runtimes.

    Contract:
    - name: unique identifier string
    - is_available(): True only if the runtime can be used
    - version(): version string of the native library
    - the remaining methods mirror TF_* functions one to one
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the unique identifier for this runtime."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this runtime can be used. Must NOT raise."""
        pass

    @abstractmethod
    def version(self) -> str:
        """Version string of the native library (TF_Version)."""
        pass

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @abstractmethod
    def new_status(self) -> int:
        """TF_NewStatus. Ownership: caller; free with delete_status."""
        pass

    @abstractmethod
    def delete_status(self, status: int) -> None:
        """TF_DeleteStatus."""
        pass

    @abstractmethod
    def get_code(self, status: int) -> int:
        """TF_GetCode."""
        pass

    @abstractmethod
    def message(self, status: int) -> str:
        """TF_Message. Empty when the code is OK."""
        pass

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------

    @abstractmethod
    def new_graph(self) -> int:
        """TF_NewGraph. Ownership: caller; free with delete_graph."""
        pass

    @abstractmethod
    def delete_graph(self, graph: int) -> None:
        """TF_DeleteGraph. Operation handles of the graph become invalid."""
        pass

    @abstractmethod
    def new_operation(self, graph: int, op_type: str, name: str) -> int:
        """
        TF_NewOperation.

        Ownership: caller, until passed to finish_operation, which
        consumes the description whether or not it succeeds.
        """
        pass

    @abstractmethod
    def abandon_operation(self, desc: int) -> None:
        """Discard an operation description that will never be finished."""
        pass

    @abstractmethod
    def set_device(self, desc: int, device: str) -> None:
        """TF_SetDevice."""
        pass

    @abstractmethod
    def add_input(self, desc: int, output: NativeOutput) -> None:
        """TF_AddInput."""
        pass

    @abstractmethod
    def add_input_list(self, desc: int, outputs: Sequence[NativeOutput]) -> None:
        """TF_AddInputList."""
        pass

    @abstractmethod
    def add_control_input(self, desc: int, operation: int) -> None:
        """TF_AddControlInput."""
        pass

    @abstractmethod
    def set_attr_type(self, desc: int, name: str, dtype: int) -> None:
        """TF_SetAttrType."""
        pass

    @abstractmethod
    def set_attr_int(self, desc: int, name: str, value: int) -> None:
        """TF_SetAttrInt."""
        pass

    @abstractmethod
    def set_attr_float(self, desc: int, name: str, value: float) -> None:
        """TF_SetAttrFloat."""
        pass

    @abstractmethod
    def set_attr_bool(self, desc: int, name: str, value: bool) -> None:
        """TF_SetAttrBool."""
        pass

    @abstractmethod
    def set_attr_string(self, desc: int, name: str, value: bytes) -> None:
        """TF_SetAttrString."""
        pass

    @abstractmethod
    def set_attr_shape(
        self, desc: int, name: str, dims: Optional[Sequence[int]]
    ) -> None:
        """TF_SetAttrShape. ``None`` means unknown rank."""
        pass

    @abstractmethod
    def set_attr_tensor(self, desc: int, name: str, tensor: int, status: int) -> None:
        """TF_SetAttrTensor. The tensor is copied; the caller keeps ownership."""
        pass

    @abstractmethod
    def finish_operation(self, desc: int, status: int) -> int:
        """
        TF_FinishOperation.

        Ownership: the operation belongs to the graph and lives as long
        as the graph does. ``desc`` is consumed in all cases.
        """
        pass

    # ------------------------------------------------------------------
    # Graph inspection
    # ------------------------------------------------------------------

    @abstractmethod
    def graph_operation_by_name(self, graph: int, name: str) -> int:
        """TF_GraphOperationByName. Ownership: graph. 0 if absent."""
        pass

    @abstractmethod
    def graph_next_operation(self, graph: int, position: int) -> tuple[int, int]:
        """TF_GraphNextOperation. Returns ``(operation or 0, new_position)``."""
        pass

    @abstractmethod
    def operation_name(self, operation: int) -> str:
        """TF_OperationName."""
        pass

    @abstractmethod
    def operation_op_type(self, operation: int) -> str:
        """TF_OperationOpType."""
        pass

    @abstractmethod
    def operation_device(self, operation: int) -> str:
        """TF_OperationDevice."""
        pass

    @abstractmethod
    def operation_num_inputs(self, operation: int) -> int:
        """TF_OperationNumInputs."""
        pass

    @abstractmethod
    def operation_num_outputs(self, operation: int) -> int:
        """TF_OperationNumOutputs."""
        pass

    @abstractmethod
    def operation_output_type(self, output: NativeOutput) -> int:
        """TF_OperationOutputType."""
        pass

    @abstractmethod
    def graph_get_tensor_shape(
        self, graph: int, output: NativeOutput, status: int
    ) -> Optional[list[int]]:
        """TF_GraphGetTensorShape. ``None`` when the rank is unknown."""
        pass

    @abstractmethod
    def add_gradients(
        self,
        graph: int,
        ys: Sequence[NativeOutput],
        xs: Sequence[NativeOutput],
        dx: Optional[Sequence[NativeOutput]],
        status: int,
    ) -> list[Optional[NativeOutput]]:
        """
        TF_AddGradients.

        Adds the symbolic partial derivatives of ``sum(ys)`` with respect
        to each of ``xs``. An entry is None when ``ys`` does not depend on
        the matching ``x``. Ownership: graph.
        """
        pass

    @abstractmethod
    def graph_to_graph_def(self, graph: int, status: int) -> int:
        """TF_GraphToGraphDef. Ownership: caller; free with delete_buffer."""
        pass

    @abstractmethod
    def buffer_data(self, buffer: int) -> bytes:
        """Copy of the bytes held by a TF_Buffer."""
        pass

    @abstractmethod
    def delete_buffer(self, buffer: int) -> None:
        """TF_DeleteBuffer."""
        pass

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @abstractmethod
    def new_session_options(self) -> int:
        """TF_NewSessionOptions. Ownership: caller."""
        pass

    @abstractmethod
    def delete_session_options(self, options: int) -> None:
        """TF_DeleteSessionOptions."""
        pass

    @abstractmethod
    def set_target(self, options: int, target: str) -> None:
        """TF_SetTarget."""
        pass

    @abstractmethod
    def set_config(self, options: int, proto: bytes, status: int) -> None:
        """TF_SetConfig. ``proto`` is a serialized ConfigProto."""
        pass

    @abstractmethod
    def new_session(self, graph: int, options: int, status: int) -> int:
        """
        TF_NewSession.

        Ownership: caller; free with delete_session. The graph must
        outlive the session.
        """
        pass

    @abstractmethod
    def close_session(self, session: int, status: int) -> None:
        """TF_CloseSession."""
        pass

    @abstractmethod
    def delete_session(self, session: int, status: int) -> None:
        """TF_DeleteSession. Local resources are freed even on error."""
        pass

    @abstractmethod
    def session_run(
        self,
        session: int,
        inputs: Sequence[tuple[NativeOutput, int]],
        outputs: Sequence[NativeOutput],
        targets: Sequence[int],
        status: int,
    ) -> list[int]:
        """
        TF_SessionRun.

        Args:
            inputs: ``(output, tensor)`` feeds; tensors stay caller-owned.
            outputs: Endpoints to fetch.
            targets: Operations to run without fetching.

        Returns:
            One tensor handle per fetch. Ownership: caller. Entries are 0
            when the status is not OK.
        """
        pass

    # ------------------------------------------------------------------
    # Tensors
    # ------------------------------------------------------------------

    @abstractmethod
    def allocate_tensor(self, dtype: int, dims: Sequence[int], nbytes: int) -> int:
        """TF_AllocateTensor. Ownership: caller; buffer owned by the runtime."""
        pass

    @abstractmethod
    def new_tensor_from_array(
        self, dtype: int, dims: Sequence[int], array: np.ndarray
    ) -> int:
        """
        TF_NewTensor over an existing host buffer, without copying.

        The runtime keeps ``array`` alive until the tensor's deallocator
        runs. Ownership of the handle: caller.
        """
        pass

    @abstractmethod
    def delete_tensor(self, tensor: int) -> None:
        """TF_DeleteTensor."""
        pass

    @abstractmethod
    def tensor_type(self, tensor: int) -> int:
        """TF_TensorType."""
        pass

    @abstractmethod
    def num_dims(self, tensor: int) -> int:
        """TF_NumDims."""
        pass

    @abstractmethod
    def dim(self, tensor: int, index: int) -> int:
        """TF_Dim."""
        pass

    @abstractmethod
    def tensor_byte_size(self, tensor: int) -> int:
        """TF_TensorByteSize."""
        pass

    @abstractmethod
    def tensor_data(self, tensor: int) -> int:
        """TF_TensorData. Address of the buffer, owned by the tensor."""
        pass

    def tensor_dims(self, tensor: int) -> list[int]:
        """All dimensions of a tensor."""
        return [self.dim(tensor, i) for i in range(self.num_dims(tensor))]

    def __repr__(self) -> str:
        status = "available" if self.is_available() else "unavailable"
        return f"<{self.__class__.__name__}({self.name}, {status})>"
