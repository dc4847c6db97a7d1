"""Request-scoped state ("request globals") and the scopes that hold it.

A resident application reads the current request's query/form/files/cookies,
its server environ and a set of timing/tracing anchors from a `RequestState`.
Serial backends share one process-wide instance (`ProcessStateScope`); the
concurrent backend binds a fresh instance per request in a `ContextVar`
(`ContextStateScope`) so that two in-flight requests never see each other's
anchors. Call sites only use `scope.current()` / `scope.bind()`.
"""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional


HTTP_ENV_PREFIX = "HTTP_"


@dataclass
class RequestState:
    query: Dict[str, Any] = field(default_factory=dict)
    form: Dict[str, Any] = field(default_factory=dict)
    files: Dict[str, Any] = field(default_factory=dict)
    cookies: Dict[str, Any] = field(default_factory=dict)
    environ: Dict[str, Any] = field(default_factory=dict)
    anchors: Dict[str, Any] = field(default_factory=dict)
    # Registry entries owned by this request (concurrent backends only).
    services: Dict[str, Any] = field(default_factory=dict)

    def clear_request_data(self) -> None:
        """Drop inbound request data; environ entries other than HTTP_* survive."""
        self.query = {}
        self.form = {}
        self.files = {}
        self.cookies = {}
        for key in [k for k in self.environ.keys() if str(k).startswith(HTTP_ENV_PREFIX)]:
            self.environ.pop(key, None)

    def is_request_data_empty(self) -> bool:
        if self.query or self.form or self.files or self.cookies:
            return False
        return not any(str(k).startswith(HTTP_ENV_PREFIX) for k in self.environ.keys())


class StateScope:
    """Where the current RequestState lives."""

    kind = "abstract"

    def current(self) -> RequestState:  # pragma: no cover - interface
        raise NotImplementedError

    def bound(self) -> Optional[RequestState]:
        """The state of the request being served in this context, or None outside one."""
        return None

    @contextmanager
    def bind(self, state: Optional[RequestState] = None) -> Iterator[RequestState]:  # pragma: no cover - interface
        raise NotImplementedError
        yield state  # type: ignore[misc]


class ProcessStateScope(StateScope):
    """One shared RequestState per process; safe only when requests are serialized."""

    kind = "process"

    def __init__(self, state: Optional[RequestState] = None) -> None:
        self._state = state or RequestState()

    def current(self) -> RequestState:
        return self._state

    @contextmanager
    def bind(self, state: Optional[RequestState] = None) -> Iterator[RequestState]:
        if state is not None:
            # Keep the same object so anything holding a reference sees the update.
            self._state.query = state.query
            self._state.form = state.form
            self._state.files = state.files
            self._state.cookies = state.cookies
            self._state.environ.update(state.environ)
        yield self._state


class ContextStateScope(StateScope):
    """RequestState bound per logical request via contextvars."""

    kind = "context"

    def __init__(self, name: str = "warmworker_request_state") -> None:
        self._var: contextvars.ContextVar[Optional[RequestState]] = contextvars.ContextVar(name, default=None)
        self._fallback = RequestState()

    def current(self) -> RequestState:
        state = self._var.get()
        return state if state is not None else self._fallback

    def bound(self) -> Optional[RequestState]:
        return self._var.get()

    @contextmanager
    def bind(self, state: Optional[RequestState] = None) -> Iterator[RequestState]:
        bound = state if state is not None else RequestState()
        token = self._var.set(bound)
        try:
            yield bound
        finally:
            self._var.reset(token)


def create_scope(kind: str) -> StateScope:
    if str(kind or "").strip().lower() == "context":
        return ContextStateScope()
    return ProcessStateScope()
