# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Runtime - one native API plus the handles created through it.

Graphs, sessions and tensors are created against a Runtime. When none
is given, the process default from ``get_runtime()`` is used; it is
built from TENSORBIND_* environment variables on first use.
"""

import logging
import threading
from typing import Any, Callable, Iterable, Optional

from .config import BindingConfig
from .core.types import HandleKind
from .errors import HandleLeak, LifetimeError
from .guard import Deleter, LifetimeGuard
from .handles import HandleKey, HandleRegistry
from .native.base import NativeAPI
from .native.registry import load_native_api
from .observability import set_verbosity
from .status import call_with_status

logger = logging.getLogger("tensorbind.runtime")


class Runtime:
    """
    Binds a NativeAPI to a HandleRegistry.

    Example:
        with Runtime.from_config(BindingConfig(runtime="loopback")) as rt:
            graph = Graph(rt)
            ...
        # every handle created through rt is released here
    """

    def __init__(self, api: NativeAPI, config: Optional[BindingConfig] = None):
        self.api = api
        self.config = config or BindingConfig()
        self.registry = HandleRegistry()

    @classmethod
    def from_config(cls, config: Optional[BindingConfig] = None) -> "Runtime":
        """Load the native API selected by ``config`` (or the environment)."""
        config = config or BindingConfig.from_env()
        set_verbosity(config.verbosity)
        return cls(load_native_api(config), config)

    def invoke(
        self,
        call: str,
        fn: Callable[..., Any],
        *args: Any,
        discard: Optional[Callable[[int], None]] = None,
    ) -> Any:
        """
        Call a status-reporting native function.

        See ``tensorbind.status.call_with_status``.
        """
        return call_with_status(self.api, self.registry, call, fn, *args, discard=discard)

    def guard(
        self,
        kind: HandleKind,
        handle: int,
        deleter: Deleter,
        label: str = "",
        depends_on: Iterable[HandleKey] = (),
    ) -> LifetimeGuard:
        """Take ownership of a freshly created handle."""
        return LifetimeGuard(self.registry, kind, handle, deleter, label, depends_on)

    def status_deleter(self, call: str, fn: Callable[[int, int], None]) -> Deleter:
        """Deleter for native free functions that report through a status."""
        api, registry = self.api, self.registry

        def deleter(handle: int) -> None:
            call_with_status(api, registry, call, fn, handle)

        return deleter

    def shutdown(self) -> None:
        """
        Release every live handle, dependents first.

        Raises:
            HandleLeak: With strict_teardown, if handles could not be released.
        """
        for record in self.registry.teardown_order():
            guard = record.guard
            if guard is None or guard.released:
                continue
            try:
                guard.release()
            except LifetimeError as e:
                logger.error(
                    "could not release %s at shutdown: %s",
                    record.describe(),
                    e.message,
                    extra={"kind": record.kind.name, "handle": record.handle},
                )

        if self.config.strict_teardown:
            self.registry.assert_no_leaks()
        elif len(self.registry):
            logger.warning("%d handle(s) still live after shutdown", len(self.registry))

    def assert_no_leaks(self) -> None:
        self.registry.assert_no_leaks()

    def __enter__(self) -> "Runtime":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.shutdown()
        except HandleLeak:
            if exc_type is None:
                raise
            logger.error("handles leaked while handling %s", exc_type.__name__)

    def __repr__(self) -> str:
        return f"Runtime(api={self.api.name}, live={len(self.registry)})"


_default: Optional[Runtime] = None
_default_lock = threading.Lock()


def get_runtime() -> Runtime:
    """The process default runtime, created from the environment on first use."""
    global _default
    if _default is None:
        with _default_lock:
            if _default is None:
                _default = Runtime.from_config()
    return _default


def set_runtime(runtime: Optional[Runtime]) -> Optional[Runtime]:
    """Replace the process default runtime; returns the previous one."""
    global _default
    with _default_lock:
        previous, _default = _default, runtime
    return previous


def reset_runtime() -> None:
    """Shut down and forget the process default runtime."""
    previous = set_runtime(None)
    if previous is not None:
        previous.shutdown()
