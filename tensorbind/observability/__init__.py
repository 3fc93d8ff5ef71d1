# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
tensorbind Observability Module

Structured logging for the binding layer.
"""

from .logger import (
    Verbosity,
    LogEntry,
    StructuredFormatter,
    configure_logging,
    get_logger,
    get_verbosity,
    set_verbosity,
)

__all__ = [
    "Verbosity",
    "LogEntry",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
    "get_verbosity",
    "set_verbosity",
]
