# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Tests for tensorbind Error Handling

Validates:
- Error hierarchy
- Error message formatting
- Suggestions and context in error messages
"""

import pytest

from tensorbind.core.types import HandleKind, StatusCode
from tensorbind.errors import (
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


class TestBindingError:
    """Tests for BindingError base class."""

    def test_basic_error(self):
        """Test basic error creation."""
        error = BindingError("Test error")
        assert "Test error" in str(error)
        assert error.suggestions == []
        assert error.context == {}

    def test_error_with_suggestions(self):
        """Test suggestions are numbered in the message."""
        error = BindingError("Bad", suggestions=["First fix", "Second fix"])
        message = str(error)
        assert "Suggestions:" in message
        assert "1. First fix" in message
        assert "2. Second fix" in message

    def test_error_with_context(self):
        """Test context entries are listed in the message."""
        error = BindingError("Bad", context={"handle": "0x10"})
        assert "Context:" in str(error)
        assert "handle: 0x10" in str(error)


class TestNativeCallFailure:
    """Tests for NativeCallFailure."""

    def test_code_and_message_verbatim(self):
        """Native code and message are kept unchanged."""
        error = NativeCallFailure(StatusCode.INVALID_ARGUMENT, "bad input 'x'", "TF_SessionRun")
        assert error.code == StatusCode.INVALID_ARGUMENT
        assert error.native_message == "bad input 'x'"
        assert error.call == "TF_SessionRun"
        assert "TF_SessionRun failed: [INVALID_ARGUMENT] bad input 'x'" in str(error)

    def test_without_call_name(self):
        """Test message when the call is unknown."""
        error = NativeCallFailure(StatusCode.INTERNAL, "boom")
        assert str(error).startswith("Native call failed: [INTERNAL] boom")
        assert "call" not in error.context

    def test_is_binding_error(self):
        """Test inheritance."""
        assert issubclass(NativeCallFailure, BindingError)


class TestMarshalErrors:
    """Tests for ShapeMismatch, UnsupportedDtype and LossyConversion."""

    def test_shape_mismatch(self):
        """Test ShapeMismatch records shape and byte counts."""
        error = ShapeMismatch("too short", shape=(2, 2), expected_bytes=16, actual_bytes=10)
        assert "Shape mismatch: too short" in str(error)
        assert error.shape == (2, 2)
        assert error.expected_bytes == 16
        assert error.actual_bytes == 10
        assert error.context["shape"] == "(2, 2)"

    def test_unsupported_dtype(self):
        """Test UnsupportedDtype message."""
        error = UnsupportedDtype("string", reason="variable size")
        assert error.dtype == "string"
        assert "'string'" in str(error)
        assert "variable size" in str(error)

    def test_lossy_conversion(self):
        """Test LossyConversion names both types."""
        error = LossyConversion("int32", "uint8", "out of range")
        assert error.source == "int32"
        assert error.target == "uint8"
        assert "Cannot convert int32 to uint8: out of range" in str(error)


class TestLifetimeErrors:
    """Tests for handle lifetime errors."""

    def test_double_release(self):
        """Test DoubleRelease context."""
        error = DoubleRelease(HandleKind.TENSOR, 0x20, "t")
        assert isinstance(error, LifetimeError)
        assert error.kind == HandleKind.TENSOR
        assert error.handle == 0x20
        assert error.context["handle"] == "0x20"
        assert "TENSOR handle released twice" in str(error)

    def test_use_after_release(self):
        """Test UseAfterRelease message."""
        error = UseAfterRelease(HandleKind.GRAPH, 0x30)
        assert "GRAPH handle used after release" in str(error)

    def test_unknown_handle(self):
        """Test UnknownHandle message."""
        error = UnknownHandle(HandleKind.SESSION, 0x40)
        assert "not registered" in str(error)

    def test_handle_in_use_lists_dependents(self):
        """Test HandleInUse keeps its dependents."""
        error = HandleInUse(HandleKind.GRAPH, 0x10, ["SESSION(0x20)"])
        assert error.dependents == ["SESSION(0x20)"]
        assert "SESSION(0x20)" in str(error)

    def test_handle_leak(self):
        """Test HandleLeak counts live handles."""
        error = HandleLeak(["GRAPH(0x10)", "TENSOR(0x20)"])
        assert error.live == ["GRAPH(0x10)", "TENSOR(0x20)"]
        assert "2 native handle(s) still live" in str(error)


class TestConfigurationError:
    """Tests for ConfigurationError and LibraryNotFound."""

    def test_configuration_error(self):
        """Test config key and value are in context."""
        error = ConfigurationError("bad runtime", config_key="runtime", config_value="gpu")
        assert "Configuration error: bad runtime" in str(error)
        assert error.context == {"config_key": "runtime", "config_value": "gpu"}

    def test_library_not_found(self):
        """Test LibraryNotFound suggests the loopback runtime."""
        error = LibraryNotFound("/opt/libtensorflow.so", reason="no such file")
        assert isinstance(error, ConfigurationError)
        assert error.searched == "/opt/libtensorflow.so"
        assert "TENSORBIND_RUNTIME=loopback" in str(error)


class TestErrorCatching:
    """Errors can be caught through their base classes."""

    def test_catch_lifetime_errors(self):
        """Test catching lifetime errors as BindingError."""
        with pytest.raises(BindingError):
            raise DoubleRelease(HandleKind.STATUS, 0x10)

    def test_catch_marshal_errors(self):
        """Test catching marshal errors as BindingError."""
        for error in (
            ShapeMismatch("x"),
            UnsupportedDtype("object"),
            LossyConversion("a", "b", "c"),
        ):
            with pytest.raises(BindingError):
                raise error
