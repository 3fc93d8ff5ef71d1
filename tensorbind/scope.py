# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Scope - naming and placement context for building graphs.

A root scope owns a new Graph. Sub scopes share the graph and prefix
operation names ("layer/weights/Assign"). Names are made unique within
the graph by appending "_1", "_2", ... as needed.

Example:
    scope = Scope.new_root_scope()
    x = ops.placeholder(scope.with_op_name("x"), DataType.Float)
    y = ops.square(scope, x)            # named "Square"
    z = ops.square(scope, y)            # named "Square_1"
"""

import threading
from typing import Optional, Sequence

from .graph import Graph, Operation


class _NameRegistry:
    """Names handed out for one graph, shared by all its scopes."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: dict[str, int] = {}

    def unique(self, graph: Graph, base: str) -> str:
        with self._lock:
            count = self._counts.get(base, 0)
            name = base if count == 0 else f"{base}_{count}"
            while name in self._counts or name in graph:
                count += 1
                name = f"{base}_{count}"
            self._counts[base] = count + 1
            self._counts.setdefault(name, 1)
            return name


class Scope:
    """
    Graph-building context.

    Attributes:
        graph: Graph operations are added to.
        prefix: Name prefix for operations built in this scope.
        device: Device assigned to operations built in this scope.
        control_dependencies: Operations every new operation waits for.
    """

    def __init__(
        self,
        graph: Graph,
        prefix: str = "",
        op_name: Optional[str] = None,
        device: str = "",
        control_dependencies: Sequence[Operation] = (),
        _names: Optional[_NameRegistry] = None,
    ):
        self.graph = graph
        self.prefix = prefix
        self.op_name = op_name
        self.device = device
        self.control_dependencies = list(control_dependencies)
        self._names = _names or _NameRegistry()

    @classmethod
    def new_root_scope(cls, runtime=None) -> "Scope":
        """Root scope over a new Graph."""
        return cls(Graph(runtime))

    def _derive(self, **changes) -> "Scope":
        fields = {
            "prefix": self.prefix,
            "op_name": None,
            "device": self.device,
            "control_dependencies": self.control_dependencies,
        }
        fields.update(changes)
        return Scope(self.graph, _names=self._names, **fields)

    def _qualify(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def new_sub_scope(self, name: str) -> "Scope":
        """Child scope whose operation names start with ``name/``."""
        if not name:
            return self._derive()
        return self._derive(prefix=self._names.unique(self.graph, self._qualify(name)))

    def with_op_name(self, name: str) -> "Scope":
        """Scope whose next operation is called exactly ``name``."""
        return self._derive(op_name=name)

    def without_op_name(self) -> "Scope":
        """Same scope with default operation naming."""
        return self._derive()

    def nested(self, full_name: str) -> "Scope":
        """Child scope prefixed with an already unique, fully qualified name."""
        return self._derive(prefix=full_name)

    def with_device(self, device: str) -> "Scope":
        return self._derive(device=device)

    def with_control_dependencies(self, operations: Sequence[Operation]) -> "Scope":
        return self._derive(
            control_dependencies=self.control_dependencies + list(operations)
        )

    def get_unique_name_for_op(self, default_name: str) -> str:
        """
        Name for the next operation built in this scope.

        The explicit name from ``with_op_name`` wins; otherwise
        ``default_name`` is made unique within the graph.
        """
        if self.op_name:
            return self._qualify(self.op_name)
        return self._names.unique(self.graph, self._qualify(default_name))

    def __repr__(self) -> str:
        return f"Scope(prefix='{self.prefix}', graph={self.graph!r})"
