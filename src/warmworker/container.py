"""Contract of the resident application, plus a reference implementation.

warmworker treats the application as opaque: it must handle a request and
expose a service registry (`has` / `make` / `delete`). Timing and memory
anchors are read and rewritten through `SupportsAnchors` rather than by
poking at private attributes.
"""

from __future__ import annotations

import importlib
import threading
import time
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Protocol, runtime_checkable

from .errors import ApplicationLoadError
from .messages import Request, Response
from .state import StateScope


@runtime_checkable
class ServiceRegistry(Protocol):
    def has(self, name: str) -> bool: ...

    def make(self, name: str) -> Any: ...

    def delete(self, name: str) -> None: ...


@runtime_checkable
class ResidentApplication(ServiceRegistry, Protocol):
    def handle(self, request: Request) -> Response: ...


@runtime_checkable
class SupportsRequestScope(Protocol):
    """Registry that can keep some services per request instead of per process."""

    def use_request_scope(self, scope: StateScope, names: Iterable[str]) -> None: ...


@runtime_checkable
class SupportsAnchors(Protocol):
    """Objects whose request-start time/memory anchors can be rewound."""

    def get_timing_anchor(self) -> float: ...

    def set_timing_anchor(self, value: float) -> None: ...

    def get_memory_anchor(self) -> int: ...

    def set_memory_anchor(self, value: int) -> None: ...


class ServiceContainer:
    """Minimal service registry: named factories with lazily-built shared instances."""

    def __init__(self) -> None:
        self._bindings: Dict[str, Callable[[], Any]] = {}
        self._shared: Dict[str, bool] = {}
        self._instances: Dict[str, Any] = {}
        self._lock = threading.RLock()
        self._request_scope: Optional[StateScope] = None
        self._request_services: FrozenSet[str] = frozenset()

    def bind(self, name: str, factory: Callable[[], Any], *, shared: bool = True) -> None:
        with self._lock:
            self._bindings[str(name)] = factory
            self._shared[str(name)] = bool(shared)
            self._instances.pop(str(name), None)

    def use_request_scope(self, scope: StateScope, names: Iterable[str]) -> None:
        """While a request is bound in `scope`, keep `names` in that request's state.

        Concurrent requests then never see or delete each other's instances of
        those services; everything else stays shared by the process.
        """
        with self._lock:
            self._request_scope = scope
            self._request_services = frozenset(str(n) for n in names)

    def _overlay(self, key: str) -> Optional[Dict[str, Any]]:
        if self._request_scope is None or key not in self._request_services:
            return None
        state = self._request_scope.bound()
        return state.services if state is not None else None

    def instance(self, name: str, obj: Any) -> None:
        key = str(name)
        overlay = self._overlay(key)
        if overlay is not None:
            overlay[key] = obj
            return
        with self._lock:
            self._instances[key] = obj

    def has(self, name: str) -> bool:
        key = str(name)
        overlay = self._overlay(key)
        if overlay is not None and key in overlay:
            return True
        with self._lock:
            return key in self._instances or key in self._bindings

    def resolved(self, name: str) -> bool:
        key = str(name)
        overlay = self._overlay(key)
        if overlay is not None:
            return key in overlay
        with self._lock:
            return key in self._instances

    def make(self, name: str) -> Any:
        key = str(name)
        overlay = self._overlay(key)
        if overlay is not None:
            if key in overlay:
                return overlay[key]
            with self._lock:
                factory = self._bindings.get(key)
            if factory is None:
                raise KeyError(f"Service not bound: {key}")
            obj = factory()
            if self._shared.get(key, True):
                overlay[key] = obj
            return obj
        with self._lock:
            if key in self._instances:
                return self._instances[key]
            factory = self._bindings.get(key)
            if factory is None:
                raise KeyError(f"Service not bound: {key}")
            obj = factory()
            if self._shared.get(key, True):
                self._instances[key] = obj
            return obj

    def delete(self, name: str) -> None:
        """Forget the resolved instance; the binding stays so the next `make` rebuilds it."""
        key = str(name)
        overlay = self._overlay(key)
        if overlay is not None:
            overlay.pop(key, None)
            return
        with self._lock:
            self._instances.pop(key, None)


class Application(ServiceContainer):
    """Reference resident application: a registry plus a request handler.

    Subclass and override `handle`, or pass `handler(app, request)`.
    """

    def __init__(
        self,
        handler: Optional[Callable[["Application", Request], Response]] = None,
        *,
        debug: bool = False,
    ) -> None:
        super().__init__()
        self._handler = handler
        self.debug = bool(debug)
        self._begin_time = time.time()
        self._begin_mem = 0

    def is_debug(self) -> bool:
        return bool(self.debug)

    def handle(self, request: Request) -> Response:
        if self._handler is None:
            return Response.text("", status=404)
        return self._handler(self, request)

    def get_timing_anchor(self) -> float:
        return self._begin_time

    def set_timing_anchor(self, value: float) -> None:
        self._begin_time = float(value)

    def get_memory_anchor(self) -> int:
        return self._begin_mem

    def set_memory_anchor(self, value: int) -> None:
        self._begin_mem = int(value)


def load_application(target: str) -> ResidentApplication:
    """Resolve "package.module:attribute"; a callable without `handle` is used as a factory."""
    spec = str(target or "").strip()
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ApplicationLoadError(f'Application must be given as "module:attribute", got {spec!r}')
    try:
        module = importlib.import_module(module_name)
    except Exception as e:
        raise ApplicationLoadError(f"Cannot import application module {module_name!r}: {e}") from e

    obj: Any = module
    for part in attr.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as e:
            raise ApplicationLoadError(f"Attribute {attr!r} not found in module {module_name!r}") from e

    if not hasattr(obj, "handle") and callable(obj):
        try:
            obj = obj()
        except Exception as e:
            raise ApplicationLoadError(f"Application factory {spec!r} failed: {e}") from e
    if not isinstance(obj, ResidentApplication):
        raise ApplicationLoadError(
            f"{spec!r} does not provide a resident application (needs handle/has/make/delete)"
        )
    return obj
