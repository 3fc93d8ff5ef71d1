# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
tensorbind Error Hierarchy

Provides the error types raised at the binding boundary:
- Clear error categorization
- Helpful error messages with suggestions
- Context information for debugging

Error Categories:
- BindingError: Base class for all tensorbind errors
- NativeCallFailure: A native call reported a non-OK status
- ShapeMismatch: Shape product and buffer length disagree
- UnsupportedDtype: Data type has no host/native mapping
- LossyConversion: Destination type cannot represent the values
- LifetimeError: Programming errors on handle lifetimes
  (DoubleRelease, UseAfterRelease, UnknownHandle, HandleInUse, HandleLeak)
- ConfigurationError: Configuration/setup errors (LibraryNotFound)
"""

from typing import Optional

from .core.types import HandleKind, StatusCode


class BindingError(Exception):
    """
    Base class for all tensorbind errors.

    Provides consistent error formatting and context tracking.

    Attributes:
        message: Human-readable error message
        suggestions: List of suggestions to fix the error
        context: Optional context dictionary for debugging
    """

    def __init__(
        self,
        message: str,
        suggestions: Optional[list[str]] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.suggestions = suggestions or []
        self.context = context or {}

        full_message = self._format_message()
        super().__init__(full_message)

    def _format_message(self) -> str:
        """Format the error message with suggestions."""
        lines = [self.message]

        if self.suggestions:
            lines.append("")
            lines.append("Suggestions:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"  {i}. {suggestion}")

        if self.context:
            lines.append("")
            lines.append("Context:")
            for key, value in self.context.items():
                lines.append(f"  {key}: {value}")

        return "\n".join(lines)


class NativeCallFailure(BindingError):
    """
    A native call populated its status with a non-OK code.

    The native code and message are kept verbatim in ``code`` and
    ``native_message``; ``call`` names the C entry point.
    """

    def __init__(
        self,
        code: StatusCode,
        native_message: str,
        call: Optional[str] = None,
    ):
        self.code = code
        self.native_message = native_message
        self.call = call

        context = {"code": f"{code.name} ({int(code)})"}
        if call:
            context["call"] = call

        label = f"{call} failed" if call else "Native call failed"
        super().__init__(
            message=f"{label}: [{code.name}] {native_message}",
            context=context,
        )


class ShapeMismatch(BindingError):
    """
    Buffer length does not match the shape product times the element size.

    Raised when:
    - Wrapping a raw buffer whose length disagrees with the requested shape
    - A native tensor reports a byte size inconsistent with its shape
    """

    def __init__(
        self,
        message: str,
        shape: Optional[tuple] = None,
        expected_bytes: Optional[int] = None,
        actual_bytes: Optional[int] = None,
    ):
        self.shape = shape
        self.expected_bytes = expected_bytes
        self.actual_bytes = actual_bytes

        context = {}
        if shape is not None:
            context["shape"] = str(tuple(shape))
        if expected_bytes is not None:
            context["expected_bytes"] = expected_bytes
        if actual_bytes is not None:
            context["actual_bytes"] = actual_bytes

        super().__init__(
            message=f"Shape mismatch: {message}",
            suggestions=[
                "Check that the buffer holds numel(shape) * itemsize bytes",
                "Verify the dtype matches the buffer encoding",
            ],
            context=context,
        )


class UnsupportedDtype(BindingError):
    """
    Data type cannot be marshaled between host and native layouts.

    Raised for variable-size native types (String, Resource, Variant),
    types without a NumPy equivalent (BFloat16, quantized types) and
    host arrays of object dtype.
    """

    def __init__(self, dtype: str, reason: Optional[str] = None):
        self.dtype = dtype

        context = {"dtype": dtype}
        if reason:
            context["reason"] = reason

        super().__init__(
            message=f"Data type '{dtype}' is not supported for marshaling",
            suggestions=[
                "Convert the array to a fixed-size numeric dtype",
                "Pass an explicit dtype supported by the runtime",
            ],
            context=context,
        )


class LossyConversion(BindingError):
    """
    Destination type cannot represent the source values.

    Raised instead of silently truncating, wrapping or overflowing.
    """

    def __init__(self, source: str, target: str, reason: str):
        self.source = source
        self.target = target

        super().__init__(
            message=f"Cannot convert {source} to {target}: {reason}",
            suggestions=[
                f"Fetch the values as {source} and convert explicitly",
                "Choose a wider destination dtype",
            ],
            context={"source": source, "target": target},
        )


class LifetimeError(BindingError):
    """
    Base class for handle lifetime programming errors.

    These indicate a bug in the calling code and are never retried.
    """

    def __init__(
        self,
        message: str,
        kind: Optional[HandleKind] = None,
        handle: Optional[int] = None,
        label: Optional[str] = None,
        suggestions: Optional[list[str]] = None,
    ):
        self.kind = kind
        self.handle = handle

        context = {}
        if kind is not None:
            context["kind"] = kind.name
        if handle is not None:
            context["handle"] = hex(handle)
        if label:
            context["label"] = label

        super().__init__(message=message, suggestions=suggestions, context=context)


class DoubleRelease(LifetimeError):
    """Handle was released a second time."""

    def __init__(self, kind: HandleKind, handle: int, label: Optional[str] = None):
        super().__init__(
            message=f"{kind.name} handle released twice",
            kind=kind,
            handle=handle,
            label=label,
            suggestions=["Release each handle once, or rely on the with-block"],
        )


class UseAfterRelease(LifetimeError):
    """Handle was borrowed after it had been released."""

    def __init__(self, kind: HandleKind, handle: int, label: Optional[str] = None):
        super().__init__(
            message=f"{kind.name} handle used after release",
            kind=kind,
            handle=handle,
            label=label,
            suggestions=["Keep the owning object alive while it is in use"],
        )


class UnknownHandle(LifetimeError):
    """Handle is not known to the registry."""

    def __init__(self, kind: HandleKind, handle: int):
        super().__init__(
            message=f"{kind.name} handle is not registered",
            kind=kind,
            handle=handle,
        )


class HandleInUse(LifetimeError):
    """Release refused because something still depends on the handle."""

    def __init__(
        self,
        kind: HandleKind,
        handle: int,
        dependents: list[str],
        label: Optional[str] = None,
    ):
        self.dependents = dependents
        super().__init__(
            message=(
                f"{kind.name} handle is still in use by: " + ", ".join(dependents)
            ),
            kind=kind,
            handle=handle,
            label=label,
            suggestions=["Release dependent sessions, tensors or views first"],
        )


class HandleLeak(LifetimeError):
    """Live handles remained where none were expected."""

    def __init__(self, live: list[str]):
        self.live = live
        super().__init__(
            message=f"{len(live)} native handle(s) still live: " + ", ".join(live),
            suggestions=["Release handles explicitly or use with-blocks"],
        )


class ConfigurationError(BindingError):
    """
    Configuration or setup error.

    Raised when:
    - Invalid configuration parameters
    - Native library too old
    - Native API initialization failure
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[str] = None,
        suggestions: Optional[list[str]] = None,
    ):
        context = {}
        if config_key:
            context["config_key"] = config_key
        if config_value:
            context["config_value"] = str(config_value)

        super().__init__(
            message=f"Configuration error: {message}",
            suggestions=suggestions
            or [
                "Check configuration parameters",
                "Review the TENSORBIND_* environment variables",
            ],
            context=context,
        )


class LibraryNotFound(ConfigurationError):
    """The native TensorFlow C library could not be loaded."""

    def __init__(self, searched: str, reason: Optional[str] = None):
        self.searched = searched
        message = f"libtensorflow not found ({searched})"
        if reason:
            message += f": {reason}"
        super().__init__(
            message=message,
            config_key="library_path",
            config_value=searched,
            suggestions=[
                "Install the TensorFlow C library",
                "Set TENSORBIND_LIBRARY to the path of libtensorflow",
                "Set TENSORBIND_RUNTIME=loopback to use the in-process runtime",
            ],
        )
