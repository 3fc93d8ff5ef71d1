# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Status Bridge - native status out-parameters to exceptions.

Native calls that can fail write a code and a message into a status
object passed as their last argument. ``call_with_status`` allocates
that status, makes the call, and raises NativeCallFailure before any
of the call's outputs reach host code.
"""

import logging
from typing import Any, Callable, Iterator, Optional

from .core.types import HandleKind, StatusCode
from .errors import NativeCallFailure
from .guard import LifetimeGuard
from .native.base import NativeAPI

logger = logging.getLogger("tensorbind.status")


def check_status(api: NativeAPI, status: int, call: str) -> None:
    """
    Raise NativeCallFailure if a status holds a non-OK code.

    Args:
        api: Native API that owns the status.
        status: Raw status handle.
        call: Name of the native call, for the error message.
    """
    code = StatusCode.from_native(api.get_code(status))
    if code == StatusCode.OK:
        return
    message = api.message(status)
    logger.debug("%s failed: [%s] %s", call, code.name, message, extra={"call": call})
    raise NativeCallFailure(code, message, call)


def _handles_in(result: Any) -> Iterator[int]:
    if isinstance(result, bool):
        return
    if isinstance(result, int):
        if result:
            yield result
    elif isinstance(result, (list, tuple)):
        for item in result:
            yield from _handles_in(item)


def call_with_status(
    api: NativeAPI,
    registry,
    call: str,
    fn: Callable[..., Any],
    *args: Any,
    discard: Optional[Callable[[int], None]] = None,
) -> Any:
    """
    Call ``fn(*args, status)`` and check the status before returning.

    Args:
        api: Native API providing the status object.
        registry: Handle registry tracking the status.
        call: Name of the native call.
        fn: Bound native method taking a status as its last argument.
        discard: Frees an output handle; applied to every non-null
            handle in the result when the call fails.

    Returns:
        Whatever ``fn`` returned, only when the status is OK.

    Raises:
        NativeCallFailure: With the native code and message verbatim.
    """
    status = LifetimeGuard(registry, HandleKind.STATUS, api.new_status(), api.delete_status, call)
    try:
        with status.borrow() as status_handle:
            result = fn(*args, status_handle)
            try:
                check_status(api, status_handle, call)
            except NativeCallFailure:
                if discard is not None:
                    for handle in _handles_in(result):
                        discard(handle)
                raise
        return result
    finally:
        status.release()
