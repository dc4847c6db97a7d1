from __future__ import annotations

import logging
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .config import WorkerConfig
from .container import ResidentApplication
from .debug import debug_services, expose_error_details, is_debug_mode
from .messages import Request, Response
from .resetter import StateResetter


logger = logging.getLogger(__name__)

# Per-request services dropped after every request (rebuilt lazily by the app on next use).
COMMON_SERVICES = ("session", "cookie", "view", "template", "cache", "db", "validate", "filesystem")
NON_DEBUG_SERVICES = ("log", "middleware")

RecycleListener = Callable[["RequestLifecycleManager"], None]


def request_services(config: Optional[WorkerConfig] = None) -> Tuple[str, ...]:
    """Every registry entry `flush()` may drop, i.e. the services owned by one request."""
    cfg = config or WorkerConfig()
    names: List[str] = []
    for name in (*cfg.flush, "request", "response", *COMMON_SERVICES, *NON_DEBUG_SERVICES, "route"):
        if name not in names:
            names.append(name)
    return tuple(names)


@dataclass(frozen=True)
class WorkerState:
    request_count: int
    max_requests: int
    started_at: float


class RequestLifecycleManager:
    """Dispatches requests into the resident application and decides when to recycle."""

    def __init__(
        self,
        app: ResidentApplication,
        config: Optional[WorkerConfig] = None,
        *,
        resetter: Optional[StateResetter] = None,
        manage_registry: bool = True,
        concurrent: bool = False,
    ) -> None:
        self._app = app
        self._cfg = config or WorkerConfig()
        self._resetter = resetter or StateResetter()
        self._max_requests = max(1, int(self._cfg.max_requests))
        self._request_count = 0
        self._started_at = time.time()
        self._listeners: List[RecycleListener] = []
        self._lock = threading.Lock()
        # False when the registry is shared by concurrent requests and cannot isolate them.
        self._manage_registry = bool(manage_registry)
        self._concurrent = bool(concurrent)

    @property
    def app(self) -> ResidentApplication:
        return self._app

    @property
    def request_count(self) -> int:
        return self._request_count

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @max_requests.setter
    def max_requests(self, value: int) -> None:
        self._max_requests = max(1, int(value))

    @property
    def manages_registry(self) -> bool:
        return self._manage_registry

    @property
    def debug(self) -> bool:
        return is_debug_mode(self._cfg, self._app)

    def worker_state(self) -> WorkerState:
        return WorkerState(
            request_count=self._request_count,
            max_requests=self._max_requests,
            started_at=self._started_at,
        )

    def on_recycle(self, listener: RecycleListener) -> None:
        self._listeners.append(listener)

    def reset_request_count(self) -> None:
        with self._lock:
            self._request_count = 0

    def should_restart(self) -> bool:
        return self._request_count >= self._max_requests

    def handle(self, request: Request) -> Response:
        """Dispatch one request. Never raises: failures become error responses."""
        if self.debug:
            self._resetter.reset_app(self._app)

        with self._lock:
            self._request_count += 1

        instance = getattr(self._app, "instance", None) if self._manage_registry else None
        if callable(instance):
            try:
                instance("request", request)
            except Exception as e:
                logger.debug("RequestLifecycleManager: cannot register request: %s", e)

        try:
            response = self._app.handle(request)
        except Exception as e:
            return self.handle_exception(e)

        recycle = False
        with self._lock:
            if self.should_restart():
                self._request_count = 0
                recycle = True
        if recycle:
            self._notify_recycle()
        return response

    def handle_exception(self, exc: BaseException) -> Response:
        frames = traceback.extract_tb(exc.__traceback__) if exc.__traceback__ is not None else []
        where = frames[-1] if frames else None
        logger.error(
            "Application Error: %s (file=%s, line=%s)\n%s",
            exc,
            where.filename if where else "?",
            where.lineno if where else "?",
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )

        status = getattr(exc, "status_code", None)
        if not isinstance(status, int) or status < 400 or status > 599:
            status = 500
        message = str(exc) if expose_error_details(self._cfg, self._app) else "Internal Server Error"
        return Response.json({"error": "Application Error", "message": message, "code": status}, status=status)

    def warm(self) -> List[str]:
        """Eagerly build the configured services; returns the names that were built."""
        warmed: List[str] = []
        for name in self._cfg.warm:
            try:
                if self._app.has(name):
                    self._app.make(name)
                    warmed.append(name)
            except Exception as e:
                logger.warning("RequestLifecycleManager: failed to warm service %s: %s", name, e)
        return warmed

    def flush(self) -> None:
        """Drop per-request services so the next request starts from a clean registry."""
        debug = self.debug
        if not self._manage_registry:
            if debug:
                self._resetter.reset_app(self._app)
            return

        for name in self._cfg.flush:
            self._delete_service(name)
        self._delete_service("request")
        self._delete_service("response")

        keep = set(debug_services(self._cfg, self._app))
        services = list(COMMON_SERVICES)
        if not debug:
            services.extend(NON_DEBUG_SERVICES)
        for name in services:
            if name not in keep:
                self._delete_service(name)

        if debug:
            self._resetter.reset_app(self._app)
        else:
            self._reset_application_state()

    def _reset_application_state(self) -> None:
        # App-wide handlers are shared by every in-flight request on concurrent backends.
        methods = () if self._concurrent else ("reset_error_handler", "clear_middleware")
        for method in methods:
            fn = getattr(self._app, method, None)
            if callable(fn):
                try:
                    fn()
                except Exception as e:
                    logger.debug("RequestLifecycleManager: app.%s() failed: %s", method, e)
        self._delete_service("route")

    def _delete_service(self, name: str) -> None:
        try:
            if self._app.has(name):
                self._app.delete(name)
        except Exception as e:
            logger.debug("RequestLifecycleManager: cannot delete service %s: %s", name, e)

    def _notify_recycle(self) -> None:
        logger.info("Worker reached max_requests=%s; requesting recycle", self._max_requests)
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("RequestLifecycleManager: recycle listener failed")
