# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Session - executes a Graph through the native runtime.

A Session is bound to one Graph for its whole life: it keeps the Graph
object alive and registers a dependency on it, so the Graph cannot be
released while the Session is live.

Example:
    with Session(graph) as session:
        (z,) = session.run([z_output], feeds={x_output: np.float32(2.0)})
        print(z.numpy())
"""

import logging
from contextlib import ExitStack
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from .core.types import HandleKind
from .errors import BindingError
from .graph import Graph, Operation, Output
from .tensor import Tensor

logger = logging.getLogger("tensorbind.session")


class SessionOptions:
    """Owned native session options (target and serialized ConfigProto)."""

    def __init__(self, runtime=None):
        from .graph import _default_runtime

        self.runtime = _default_runtime(runtime)
        api = self.runtime.api
        self._guard = self.runtime.guard(
            HandleKind.SESSION_OPTIONS,
            api.new_session_options(),
            api.delete_session_options,
            "SessionOptions",
        )

    @property
    def guard(self):
        return self._guard

    def set_target(self, target: str) -> "SessionOptions":
        """Execution target; "" (or "local") runs in process."""
        with self._guard.borrow_mut() as handle:
            self.runtime.api.set_target(handle, target)
        return self

    def set_config(self, proto: bytes) -> "SessionOptions":
        """Serialized ConfigProto."""
        with self._guard.borrow_mut() as handle:
            self.runtime.invoke("TF_SetConfig", self.runtime.api.set_config, handle, bytes(proto))
        return self

    def release(self) -> None:
        self._guard.release()

    def __enter__(self) -> "SessionOptions":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._guard.released:
            self.release()


class SessionRunArgs:
    """
    Feeds, fetches and targets for one ``Session.run_with`` call.

    Fetched tensors are owned by the args until taken with ``fetch()``;
    ``release()`` frees whatever was not taken.

    Example:
        args = SessionRunArgs()
        args.add_target(train_op)
        token = args.request_fetch(x_var.output)
        session.run_with(args)
        value = args.fetch(token).numpy()
    """

    def __init__(self):
        self._feeds: list[tuple[Output, Any]] = []
        self._fetches: list[Output] = []
        self._targets: list[Operation] = []
        self._results: Optional[list[Optional[Tensor]]] = None

    def add_feed(self, output: Output, value: Any) -> None:
        """Feed a Tensor (borrowed) or a host value (marshaled at run time)."""
        self._feeds.append((output, value))

    def add_target(self, operation: Operation) -> None:
        self._targets.append(operation)

    def request_fetch(self, output: Union[Output, Operation], index: int = 0) -> int:
        """
        Ask for an output to be fetched.

        Returns:
            Token to pass to ``fetch()`` after the run.
        """
        if isinstance(output, Operation):
            output = output.output(index)
        self._fetches.append(output)
        return len(self._fetches) - 1

    @property
    def feeds(self) -> list[tuple[Output, Any]]:
        return list(self._feeds)

    @property
    def fetches(self) -> list[Output]:
        return list(self._fetches)

    @property
    def targets(self) -> list[Operation]:
        return list(self._targets)

    def _store(self, tensors: list[Tensor]) -> None:
        self.release()
        self._results = list(tensors)

    def fetch(self, token: int) -> Tensor:
        """
        Take ownership of a fetched tensor.

        Raises:
            BindingError: If nothing was run yet or the token was already taken.
        """
        if self._results is None:
            raise BindingError("nothing fetched yet; run the session first")
        tensor = self._results[token]
        if tensor is None:
            raise BindingError(f"fetch token {token} was already taken")
        self._results[token] = None
        return tensor

    def release(self) -> None:
        """Free fetched tensors that were never taken."""
        for tensor in self._results or []:
            if tensor is not None and not tensor.released:
                tensor.release()
        self._results = None

    def __enter__(self) -> "SessionRunArgs":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _session_deleter(runtime):
    close = runtime.status_deleter("TF_CloseSession", runtime.api.close_session)
    delete = runtime.status_deleter("TF_DeleteSession", runtime.api.delete_session)

    def deleter(handle: int) -> None:
        try:
            close(handle)
        finally:
            delete(handle)

    return deleter


class Session:
    """
    Owned native session on a Graph.

    Thread Safety: ``run`` takes the session and graph shared, so runs
    may overlap; ``close`` and ``release`` take the session exclusively.
    """

    def __init__(self, graph: Graph, options: Optional[SessionOptions] = None):
        self.graph = graph
        self.runtime = graph.runtime
        api = self.runtime.api

        with ExitStack() as stack:
            if options is None:
                options = stack.enter_context(SessionOptions(self.runtime))
            graph_handle = stack.enter_context(graph.guard.borrow())
            options_handle = stack.enter_context(options.guard.borrow())
            handle = self.runtime.invoke(
                "TF_NewSession",
                api.new_session,
                graph_handle,
                options_handle,
                discard=_session_deleter(self.runtime),
            )
            self._guard = self.runtime.guard(
                HandleKind.SESSION,
                handle,
                _session_deleter(self.runtime),
                "Session",
                depends_on=[graph.guard.key],
            )
        self._closed = False

    @property
    def guard(self):
        return self._guard

    @property
    def closed(self) -> bool:
        return self._closed

    def run(
        self,
        fetches: Sequence[Output] = (),
        feeds: Optional[Union[Mapping[Output, Any], Iterable[tuple[Output, Any]]]] = None,
        targets: Sequence[Operation] = (),
    ) -> list[Tensor]:
        """
        Run the graph once.

        Args:
            fetches: Outputs to compute and return.
            feeds: Values for outputs (usually placeholders). Tensors are
                borrowed; other values are marshaled for this run only.
            targets: Operations to run without fetching anything.

        Returns:
            One owned Tensor per fetch. Nothing is returned if the run
            fails: every output the runtime produced is freed first.

        Raises:
            NativeCallFailure: If the runtime reports an error.
        """
        if isinstance(feeds, Mapping):
            feeds = list(feeds.items())
        feeds = list(feeds or [])
        fetches = list(fetches)
        targets = list(targets)

        for output in [o for o, _ in feeds] + fetches:
            self.graph._check_owned(output)
        for operation in targets:
            self.graph._check_owned(operation)

        api = self.runtime.api
        with ExitStack() as stack:
            native_feeds = []
            for output, value in feeds:
                if not isinstance(value, Tensor):
                    from .marshal import to_tensor

                    value = stack.enter_context(
                        to_tensor(value, dtype=output.dtype, runtime=self.runtime, label=output.name)
                    )
                raw = stack.enter_context(value.guard.borrow())
                native_feeds.append((output.native, raw))

            session_handle = stack.enter_context(self._guard.borrow())
            stack.enter_context(self.graph.guard.borrow())
            handles = self.runtime.invoke(
                "TF_SessionRun",
                api.session_run,
                session_handle,
                native_feeds,
                [o.native for o in fetches],
                [t.handle for t in targets],
                discard=api.delete_tensor,
            )

        return self._adopt(handles, fetches)

    def _adopt(self, handles: list[int], fetches: list[Output]) -> list[Tensor]:
        tensors = []
        try:
            for handle, output in zip(handles, fetches):
                tensors.append(Tensor(self.runtime, handle, label=output.name))
        except Exception:
            for tensor in tensors:
                tensor.release()
            for handle in handles[len(tensors) + 1 :]:
                if handle:
                    self.runtime.api.delete_tensor(handle)
            raise
        return tensors

    def run_with(self, args: SessionRunArgs) -> None:
        """Run with a SessionRunArgs; results are collected with ``args.fetch``."""
        args._store(self.run(args.fetches, args.feeds, args.targets))

    def close(self) -> None:
        """Stop accepting runs. The handle stays owned until ``release()``."""
        with self._guard.borrow_mut() as handle:
            self.runtime.invoke("TF_CloseSession", self.runtime.api.close_session, handle)
        self._closed = True

    def release(self) -> None:
        """Close and free the native session."""
        self._guard.release()
        self._closed = True

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._guard.released:
            self.release()

    def __repr__(self) -> str:
        state = "released" if self._guard.released else ("closed" if self._closed else "open")
        return f"<Session on {self.graph!r} {state}>"
