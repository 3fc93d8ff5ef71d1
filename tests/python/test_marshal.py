# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Tests for the Type Marshal and Tensor.

Validates:
- Zero-copy and copying paths
- Lossless conversion checks
- ShapeMismatch and UnsupportedDtype before any tensor exists
- Views keeping tensors alive
"""

import gc

import numpy as np
import pytest

from tensorbind.core.types import DataType, HandleKind
from tensorbind.errors import (
    DoubleRelease,
    HandleInUse,
    LossyConversion,
    ShapeMismatch,
    UnsupportedDtype,
)
from tensorbind.marshal import convert, tensor_from_buffer, to_numpy, to_tensor, view
from tensorbind.tensor import Tensor, resolve_dtype


class TestToTensor:
    """Tests for to_tensor."""

    def test_zero_copy(self, runtime):
        """A contiguous native-order array is lent without copying."""
        array = np.arange(6, dtype=np.float32).reshape(2, 3)
        with to_tensor(array, runtime=runtime) as tensor:
            assert tensor.buffer_owner == "host"
            assert tensor.dtype == DataType.Float
            assert tensor.shape == (2, 3)
            assert tensor.nbytes == 24
            assert runtime.api.tensor_data(tensor.handle) == array.ctypes.data
            np.testing.assert_array_equal(tensor.numpy(), array)

    def test_non_contiguous_copied(self, runtime):
        """Strided arrays are copied into a native buffer."""
        array = np.arange(12, dtype=np.int32).reshape(3, 4)[:, ::2]
        with to_tensor(array, runtime=runtime) as tensor:
            assert tensor.buffer_owner == "native"
            np.testing.assert_array_equal(tensor.numpy(), array)

    def test_byte_swapped_copied(self, runtime):
        """Non-native byte order is converted on the way in."""
        array = np.array([1.5, -2.25], dtype=np.float64).astype(
            np.dtype(np.float64).newbyteorder("S")
        )
        with to_tensor(array, runtime=runtime) as tensor:
            assert tensor.dtype == DataType.Double
            assert tensor.buffer_owner == "native"
            np.testing.assert_array_equal(tensor.numpy(), [1.5, -2.25])

    def test_python_literals(self, runtime):
        """Python values are read straight into the requested type."""
        with to_tensor([[1, 2], [3, 4]], dtype=DataType.Float, runtime=runtime) as tensor:
            assert tensor.dtype == DataType.Float
            np.testing.assert_array_equal(tensor.numpy(), [[1, 2], [3, 4]])
        with to_tensor(0.1, dtype=np.float32, runtime=runtime) as tensor:
            assert tensor.shape == ()
            assert tensor.numpy() == np.float32(0.1)

    def test_scalar_default_dtype(self, runtime):
        """Without a dtype, the value's own type is kept."""
        with to_tensor(np.float32(3.0), runtime=runtime) as tensor:
            assert tensor.dtype == DataType.Float
            assert tensor.shape == ()
            assert tensor.size == 1

    def test_widening_conversion(self, runtime):
        """Exact conversions are allowed."""
        with to_tensor(np.array([1, 2, 3], np.int8), dtype=DataType.Int64, runtime=runtime) as t:
            assert t.dtype == DataType.Int64
            np.testing.assert_array_equal(t.numpy(), [1, 2, 3])

    def test_lossy_conversions_rejected(self, runtime):
        """Values that do not survive the conversion raise."""
        with pytest.raises(LossyConversion):
            to_tensor(np.array([300], np.int32), dtype=DataType.UInt8, runtime=runtime)
        with pytest.raises(LossyConversion):
            to_tensor(np.array([1.5]), dtype=DataType.Int32, runtime=runtime)
        with pytest.raises(LossyConversion):
            to_tensor(np.array([np.nan]), dtype=DataType.Int32, runtime=runtime)
        with pytest.raises(LossyConversion):
            to_tensor(1.5, dtype=DataType.Int32, runtime=runtime)
        with pytest.raises(LossyConversion):
            to_tensor(300, dtype=DataType.UInt8, runtime=runtime)
        assert runtime.registry.count(HandleKind.TENSOR) == 0

    def test_float_arrays_match_literals(self, runtime):
        """A float64 array narrows to Float like the same Python list does."""
        with to_tensor(np.array([0.1, 2.5]), dtype=DataType.Float, runtime=runtime) as t:
            from_array = t.numpy()
        with to_tensor([0.1, 2.5], dtype=DataType.Float, runtime=runtime) as t:
            from_list = t.numpy()
        assert from_array.dtype == np.float32
        np.testing.assert_array_equal(from_array, from_list)

    def test_ragged_sequence(self, runtime):
        """Ragged nested sequences raise ShapeMismatch and allocate nothing."""
        with pytest.raises(ShapeMismatch):
            to_tensor([[1, 2], [3]], dtype=np.int32, runtime=runtime)
        with pytest.raises(ShapeMismatch):
            to_tensor([[1.0], [2.0, 3.0]], runtime=runtime)
        assert runtime.registry.count(HandleKind.TENSOR) == 0
        assert runtime.api.live_counts()["tensor"] == 0

    def test_unsupported_dtypes(self, runtime):
        """Variable-size and object arrays have no native layout."""
        with pytest.raises(UnsupportedDtype):
            to_tensor(np.array(["a", "b"]), runtime=runtime)
        with pytest.raises(UnsupportedDtype):
            to_tensor(np.array([object()]), runtime=runtime)
        with pytest.raises(UnsupportedDtype):
            to_tensor(np.array([1.0]), dtype=DataType.String, runtime=runtime)
        assert runtime.registry.count(HandleKind.TENSOR) == 0

    def test_default_runtime(self, runtime):
        """Without a runtime argument the default runtime is used."""
        with Tensor.from_numpy(np.ones(2, np.float32)) as tensor:
            assert tensor.runtime is runtime


class TestTensorFromBuffer:
    """Tests for tensor_from_buffer."""

    def test_valid_buffer(self, runtime):
        """Test raw bytes in native layout."""
        data = np.array([1, 2, 3, 4], dtype=np.int16).tobytes()
        with tensor_from_buffer(data, [2, 2], DataType.Int16, runtime=runtime) as tensor:
            assert tensor.buffer_owner == "native"
            np.testing.assert_array_equal(tensor.numpy(), [[1, 2], [3, 4]])

    def test_shape_mismatch_creates_nothing(self, runtime):
        """A short buffer raises before any tensor is registered."""
        with pytest.raises(ShapeMismatch) as exc_info:
            tensor_from_buffer(b"\x00" * 10, [2, 2], DataType.Float, runtime=runtime)
        assert exc_info.value.expected_bytes == 16
        assert exc_info.value.actual_bytes == 10
        assert runtime.registry.count(HandleKind.TENSOR) == 0
        assert runtime.api.live_counts()["tensor"] == 0

    def test_unknown_dimension(self, runtime):
        """Shapes must be fully defined."""
        with pytest.raises(ShapeMismatch):
            tensor_from_buffer(b"", [-1], DataType.Float, runtime=runtime)

    def test_empty_tensor(self, runtime):
        """Zero-element shapes take zero bytes."""
        with Tensor.from_buffer(b"", [0, 3], DataType.Double, runtime=runtime) as tensor:
            assert tensor.shape == (0, 3)
            assert tensor.numpy().shape == (0, 3)

    def test_buffer_is_copied(self, runtime):
        """The source buffer can change afterwards."""
        source = bytearray(np.array([7.0], np.float32).tobytes())
        with tensor_from_buffer(source, [1], DataType.Float, runtime=runtime) as tensor:
            source[:] = bytes(4)
            assert tensor.numpy()[0] == 7.0


class TestNativeTensorChecks:
    """Tensor validates what the runtime reports."""

    def test_native_size_mismatch(self, runtime):
        """A native tensor whose byte size disagrees with its shape is rejected."""
        handle = runtime.api.allocate_tensor(int(DataType.Float), [2, 2], 10)
        with pytest.raises(ShapeMismatch):
            Tensor(runtime, handle)
        assert runtime.registry.count(HandleKind.TENSOR) == 0
        assert runtime.api.live_counts()["tensor"] == 0

    def test_unknown_type_code(self, runtime):
        """Unknown type codes raise UnsupportedDtype and free the tensor."""
        handle = runtime.api.allocate_tensor(99, [1], 4)
        with pytest.raises(UnsupportedDtype):
            Tensor(runtime, handle)
        assert runtime.api.live_counts()["tensor"] == 0


class TestToNumpy:
    """Tests for to_numpy and views."""

    def test_copy_is_independent(self, runtime):
        """Copies outlive the tensor."""
        tensor = to_tensor(np.array([1, 2], np.int64), runtime=runtime)
        result = to_numpy(tensor)
        tensor.release()
        np.testing.assert_array_equal(result, [1, 2])
        assert result.flags.writeable

    def test_convert_on_the_way_out(self, runtime):
        """A different dtype is checked like on the way in."""
        with to_tensor(np.array([1, 2], np.int32), runtime=runtime) as tensor:
            assert tensor.numpy(np.float64).dtype == np.float64
        with to_tensor(np.array([1000], np.int32), runtime=runtime) as tensor:
            with pytest.raises(LossyConversion):
                tensor.numpy(np.int8)

    def test_view_blocks_release(self, runtime):
        """A live view keeps the tensor from being released."""
        tensor = to_tensor(np.arange(4, dtype=np.float32), runtime=runtime)
        v = view(tensor)
        assert not v.flags.writeable
        assert tensor.live_views == 1
        with pytest.raises(HandleInUse):
            tensor.release()
        np.testing.assert_array_equal(v, [0, 1, 2, 3])

        del v
        gc.collect()
        assert tensor.live_views == 0
        tensor.release()
        with pytest.raises(DoubleRelease):
            tensor.release()

    def test_view_keeps_tensor_alive(self, runtime):
        """Dropping the Tensor object keeps the view valid."""
        v = to_tensor(np.array([5.0, 6.0]), runtime=runtime).view()
        gc.collect()
        assert runtime.registry.count(HandleKind.TENSOR) == 1
        np.testing.assert_array_equal(v, [5.0, 6.0])
        del v
        gc.collect()
        assert runtime.registry.count(HandleKind.TENSOR) == 0

    def test_no_copy_dtype_change(self, runtime):
        """copy=False cannot change the dtype."""
        with to_tensor(np.array([1.0], np.float32), runtime=runtime) as tensor:
            with pytest.raises(ValueError):
                to_numpy(tensor, dtype=np.float64, copy=False)

    def test_array_protocol(self, runtime):
        """np.asarray works on a Tensor."""
        with to_tensor(np.array([[1, 2]], np.uint16), runtime=runtime) as tensor:
            np.testing.assert_array_equal(np.asarray(tensor), [[1, 2]])


class TestConvert:
    """Tests for convert and resolve_dtype."""

    def test_complex_to_real(self):
        """Complex values without imaginary parts convert."""
        result = convert(np.array([1 + 0j, 2 + 0j]), np.float64)
        np.testing.assert_array_equal(result, [1.0, 2.0])
        with pytest.raises(LossyConversion):
            convert(np.array([1 + 1j]), np.float64)

    def test_nan_survives_float_narrowing(self):
        """NaN converts between float types."""
        result = convert(np.array([np.nan, 1.0]), np.float32)
        assert np.isnan(result[0])

    def test_float_narrowing_rounds(self):
        """Narrower float types take the nearest value."""
        result = convert(np.array([0.1]), np.float32)
        assert result.dtype == np.float32
        assert result[0] == np.float32(0.1)

    def test_float_overflow_rejected(self):
        """Finite values that overflow the target raise."""
        with pytest.raises(LossyConversion):
            convert(np.array([1e40]), np.float32)
        with pytest.raises(LossyConversion):
            convert(np.array([1e40 + 0j]), np.complex64)
        result = convert(np.array([np.inf, -np.inf]), np.float32)
        assert np.isinf(result).all()

    def test_resolve_dtype(self):
        """Accepted dtype spellings."""
        assert resolve_dtype(None) is None
        assert resolve_dtype(DataType.Int8) == DataType.Int8
        assert resolve_dtype(3) == DataType.Int32
        assert resolve_dtype("float64") == DataType.Double
        assert resolve_dtype(np.bool_) == DataType.Bool
        with pytest.raises(UnsupportedDtype):
            resolve_dtype(999)
        with pytest.raises(UnsupportedDtype):
            resolve_dtype("U4")
