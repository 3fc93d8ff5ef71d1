# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Lifetime Guard - exactly-once release of native handles.

A LifetimeGuard owns one native handle. The handle is released once,
by whichever comes first:

1. an explicit ``release()`` (or leaving a ``with`` block),
2. garbage collection of the guard,
3. interpreter exit.

Native calls reach the raw handle only through ``borrow()`` (shared)
or ``borrow_mut()`` (exclusive), so a release waits for calls in
flight and later borrows fail with UseAfterRelease.
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, Optional

from .core.types import HandleKind
from .errors import BindingError, DoubleRelease, HandleInUse, LifetimeError, UseAfterRelease
from .handles import HandleKey, HandleRegistry

logger = logging.getLogger("tensorbind.guard")

Deleter = Callable[[int], None]


class SharedExclusiveLock:
    """
    Many shared holders or one exclusive holder.

    The exclusive side is re-entrant, and its holder may also take the
    shared side.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer: Optional[int] = None
        self._depth = 0

    def acquire_shared(self) -> None:
        me = threading.get_ident()
        with self._cond:
            while self._writer is not None and self._writer != me:
                self._cond.wait()
            self._readers += 1

    def release_shared(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_exclusive(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._depth += 1
                return
            while self._writer is not None or self._readers > 0:
                self._cond.wait()
            self._writer = me
            self._depth = 1

    def release_exclusive(self) -> None:
        with self._cond:
            self._depth -= 1
            if self._depth == 0:
                self._writer = None
                self._cond.notify_all()

    @contextmanager
    def shared(self) -> Iterator[None]:
        self.acquire_shared()
        try:
            yield
        finally:
            self.release_shared()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        self.acquire_exclusive()
        try:
            yield
        finally:
            self.release_exclusive()


def _run_deleter(deleter: Deleter, kind: HandleKind, handle: int, label: str) -> None:
    try:
        deleter(handle)
    except Exception as e:
        logger.error(
            "releasing %s handle %#x (%s) failed: %s",
            kind.name,
            handle,
            label,
            e,
            extra={"kind": kind.name, "handle": handle},
        )
    else:
        logger.debug(
            "released %s handle %#x (%s)",
            kind.name,
            handle,
            label,
            extra={"kind": kind.name, "handle": handle},
        )


def _finalize(
    registry: HandleRegistry,
    kind: HandleKind,
    handle: int,
    deleter: Deleter,
    label: str,
    dependencies: tuple = (),
) -> None:
    # ``dependencies`` keeps the guards this handle depends on reachable
    # until this call, so they are collected after it.
    try:
        registry.deregister(kind, handle)
    except LifetimeError as e:
        logger.error(
            "not releasing %s handle %#x (%s) on collection: %s",
            kind.name,
            handle,
            label,
            e.message,
            extra={"kind": kind.name, "handle": handle},
        )
        return
    _run_deleter(deleter, kind, handle, label)


def _dependency_guards(registry: HandleRegistry, keys: tuple) -> tuple:
    guards = []
    for kind, handle in keys:
        record = registry.get(kind, handle)
        guard = record.guard if record is not None else None
        if guard is not None:
            guards.append(guard)
    return tuple(guards)


class LifetimeGuard:
    """
    Owner of one native handle.

    Args:
        registry: Registry the handle is tracked in.
        kind: Kind of native resource.
        handle: Freshly created, non-null handle. Ownership moves to the guard.
        deleter: Frees the handle. Must not reference the guard's owner.
        label: Name used in logs and errors.
        depends_on: Keys of handles that must outlive this one. Their
            guards stay reachable until this handle is freed.

    Example:
        guard = LifetimeGuard(registry, HandleKind.GRAPH, h, api.delete_graph)
        with guard.borrow() as handle:
            api.graph_operation_by_name(handle, "x")
        guard.release()
    """

    def __init__(
        self,
        registry: HandleRegistry,
        kind: HandleKind,
        handle: int,
        deleter: Deleter,
        label: str = "",
        depends_on: Iterable[HandleKey] = (),
    ):
        if not handle:
            raise BindingError(
                f"native call returned a null {kind.name} handle",
                context={"kind": kind.name, "label": label},
            )

        self.kind = kind
        self.label = label or kind.name.lower()
        self._handle = int(handle)
        self._registry = registry
        self._deleter = deleter
        self._lock = SharedExclusiveLock()
        self._released = False
        # Objects that must be gone before an explicit release is allowed.
        self.blockers: Optional[Iterable] = None

        depends_on = tuple(depends_on)
        registry.register(kind, self._handle, self.label, depends_on, guard=self)
        self._finalizer = weakref.finalize(
            self,
            _finalize,
            registry,
            kind,
            self._handle,
            deleter,
            self.label,
            _dependency_guards(registry, depends_on),
        )

    @property
    def key(self) -> HandleKey:
        return (self.kind, self._handle)

    @property
    def released(self) -> bool:
        return self._released

    @property
    def handle(self) -> int:
        """The raw handle, without holding a borrow."""
        if self._released:
            raise UseAfterRelease(self.kind, self._handle, self.label)
        return self._handle

    @contextmanager
    def borrow(self) -> Iterator[int]:
        """Shared borrow of the raw handle for a read-only native call."""
        self._lock.acquire_shared()
        try:
            if self._released:
                raise UseAfterRelease(self.kind, self._handle, self.label)
            yield self._handle
        finally:
            self._lock.release_shared()

    @contextmanager
    def borrow_mut(self) -> Iterator[int]:
        """Exclusive borrow of the raw handle for a mutating native call."""
        self._lock.acquire_exclusive()
        try:
            if self._released:
                raise UseAfterRelease(self.kind, self._handle, self.label)
            yield self._handle
        finally:
            self._lock.release_exclusive()

    def _detach(self) -> None:
        if self._released:
            raise DoubleRelease(self.kind, self._handle, self.label)
        blockers = [repr(b) for b in (self.blockers or ())]
        if blockers:
            raise HandleInUse(self.kind, self._handle, blockers, label=self.label)
        self._registry.deregister(self.kind, self._handle)
        self._released = True
        self._finalizer.detach()

    def release(self) -> None:
        """
        Free the handle now.

        Raises:
            DoubleRelease: If the handle was already released.
            HandleInUse: If dependents are still live; the handle stays owned.
        """
        with self._lock.exclusive():
            self._detach()
        _run_deleter(self._deleter, self.kind, self._handle, self.label)

    def consume(self) -> int:
        """
        Hand the handle over to the native runtime without freeing it.

        Returns:
            The raw handle, now owned elsewhere.
        """
        with self._lock.exclusive():
            self._detach()
        logger.debug(
            "%s handle %#x (%s) consumed by the native runtime",
            self.kind.name,
            self._handle,
            self.label,
            extra={"kind": self.kind.name, "handle": self._handle},
        )
        return self._handle

    def __enter__(self) -> "LifetimeGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._released:
            self.release()

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"<LifetimeGuard {self.kind.name} {self._handle:#x} '{self.label}' {state}>"
