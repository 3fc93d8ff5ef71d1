# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Handle Registry - bookkeeping for live native handles.

Every guarded native handle is registered here when it is created and
deregistered when its guard releases it. The registry knows which
handles depend on which (a session on its graph), refuses to drop a
handle that still has live dependents, and can list the live handles
in an order that is safe to tear down.

Example:
    registry = HandleRegistry()
    registry.register(HandleKind.GRAPH, graph_handle, label="Graph")
    registry.register(
        HandleKind.SESSION, session_handle, depends_on=[(HandleKind.GRAPH, graph_handle)]
    )
    for record in registry.teardown_order():
        ...
"""

import itertools
import logging
import threading
import time
import weakref
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .core.types import HandleKind
from .errors import HandleInUse, HandleLeak, LifetimeError, UnknownHandle

logger = logging.getLogger("tensorbind.handles")

HandleKey = tuple[HandleKind, int]


@dataclass
class HandleRecord:
    """A live native handle and what it depends on."""

    kind: HandleKind
    handle: int
    label: str = ""
    depends_on: tuple = ()
    sequence: int = 0
    thread: str = ""
    created_at: float = field(default_factory=time.time)
    _guard: Optional[weakref.ref] = field(default=None, repr=False)

    @property
    def key(self) -> HandleKey:
        return (self.kind, self.handle)

    @property
    def guard(self) -> Any:
        """The guard owning this handle, if it is still alive."""
        return self._guard() if self._guard is not None else None

    def describe(self) -> str:
        text = f"{self.kind.name}({self.handle:#x})"
        return f"{text} '{self.label}'" if self.label else text


class HandleRegistry:
    """
    Tracks live native handles by kind.

    Thread Safety: All operations are protected by a re-entrant lock.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._records: dict[HandleKey, HandleRecord] = {}
        self._sequence = itertools.count()

    def register(
        self,
        kind: HandleKind,
        handle: int,
        label: str = "",
        depends_on: Iterable[HandleKey] = (),
        guard: Any = None,
    ) -> HandleRecord:
        """
        Register a freshly created handle.

        Args:
            kind: Kind of native resource.
            handle: Non-null native handle.
            label: Human-readable name used in logs and errors.
            depends_on: Keys of handles that must outlive this one.
            guard: Owning guard, held weakly.

        Raises:
            LifetimeError: If the handle is already registered or a
                dependency is not live.
        """
        key = (kind, handle)
        depends_on = tuple(depends_on)
        with self._lock:
            if key in self._records:
                raise LifetimeError(
                    f"{kind.name} handle registered twice", kind=kind, handle=handle, label=label
                )
            for dep in depends_on:
                if dep not in self._records:
                    raise LifetimeError(
                        f"{kind.name} handle depends on a {dep[0].name} handle that is not live",
                        kind=kind,
                        handle=handle,
                        label=label,
                    )

            record = HandleRecord(
                kind=kind,
                handle=handle,
                label=label,
                depends_on=depends_on,
                sequence=next(self._sequence),
                thread=threading.current_thread().name,
                _guard=weakref.ref(guard) if guard is not None else None,
            )
            self._records[key] = record

        logger.debug(
            "registered %s", record.describe(), extra={"kind": kind.name, "handle": handle}
        )
        return record

    def deregister(self, kind: HandleKind, handle: int) -> HandleRecord:
        """
        Remove a handle that is about to be released.

        Raises:
            UnknownHandle: If the handle is not registered.
            HandleInUse: If live handles still depend on it.
        """
        key = (kind, handle)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                raise UnknownHandle(kind, handle)
            dependents = self._dependents(key)
            if dependents:
                raise HandleInUse(
                    kind, handle, [d.describe() for d in dependents], label=record.label
                )
            del self._records[key]

        logger.debug(
            "deregistered %s", record.describe(), extra={"kind": kind.name, "handle": handle}
        )
        return record

    def _dependents(self, key: HandleKey) -> list[HandleRecord]:
        return [r for r in self._records.values() if key in r.depends_on]

    def dependents(self, kind: HandleKind, handle: int) -> list[HandleRecord]:
        """Live records that depend on the given handle."""
        with self._lock:
            return self._dependents((kind, handle))

    def is_live(self, kind: HandleKind, handle: int) -> bool:
        with self._lock:
            return (kind, handle) in self._records

    def get(self, kind: HandleKind, handle: int) -> Optional[HandleRecord]:
        with self._lock:
            return self._records.get((kind, handle))

    def live_handles(self, kind: Optional[HandleKind] = None) -> list[HandleRecord]:
        """Live records in creation order, optionally filtered by kind."""
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: r.sequence)
        if kind is not None:
            records = [r for r in records if r.kind == kind]
        return records

    def count(self, kind: Optional[HandleKind] = None) -> int:
        return len(self.live_handles(kind))

    def teardown_order(self) -> list[HandleRecord]:
        """
        Live records in a safe release order.

        Every record comes before the records it depends on. Among
        records that are free to go, lower kind ranks go first and newer
        handles before older ones.
        """
        with self._lock:
            remaining = dict(self._records)

        order = []
        while remaining:
            ready = [
                r
                for r in remaining.values()
                if not any(r.key in other.depends_on for other in remaining.values())
            ]
            if not ready:
                # Dependency cycle; cannot happen through register().
                ready = list(remaining.values())
            ready.sort(key=lambda r: (r.kind.teardown_rank, -r.sequence))
            order.append(ready[0])
            del remaining[ready[0].key]
        return order

    def assert_no_leaks(self, kinds: Optional[Iterable[HandleKind]] = None) -> None:
        """
        Raise HandleLeak if any handle (of the given kinds) is still live.
        """
        records = self.live_handles()
        if kinds is not None:
            wanted = set(kinds)
            records = [r for r in records if r.kind in wanted]
        if records:
            raise HandleLeak([r.describe() for r in records])

    def summary(self) -> dict[str, int]:
        """Live handle counts by kind name."""
        counts = {kind.name: 0 for kind in HandleKind}
        for record in self.live_handles():
            counts[record.kind.name] += 1
        return counts

    def __len__(self) -> int:
        return self.count()

    def __repr__(self) -> str:
        return f"HandleRegistry(live={self.count()})"
