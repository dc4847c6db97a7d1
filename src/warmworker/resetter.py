"""Rewinds per-request timing/memory/trace anchors of a resident application.

Used in debug mode, where tools report "time since request start" and "memory
since request start". Without a reset those figures would be measured from
worker spawn instead of from the current request. Every sub-reset is
idempotent and tolerates missing targets.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from .container import SupportsAnchors
from .memory import peak_resident_bytes, resident_bytes
from .state import ProcessStateScope, RequestState, StateScope


logger = logging.getLogger(__name__)

TIME_ANCHORS = ("start_time", "app_start_time")
MEMORY_ANCHORS = ("start_mem", "app_start_mem")
TRACE_BUFFERS = ("trace_tabs", "trace_data", "trace_info")
DEBUG_COUNTERS = ("debug_query_count", "debug_cache_count", "debug_file_count")
REQUEST_MARKERS = ("request_id", "response_time")


class StateResetter:
    def __init__(self, scope: Optional[StateScope] = None) -> None:
        self._scope = scope or ProcessStateScope()

    @property
    def state(self) -> RequestState:
        return self._scope.current()

    def reset_app(self, app: Any) -> None:
        self.reset_timer(app)
        self.reset_memory(app)
        self.reset_debug_state(app)
        self.reset_request_state(app)

    def reset_timer(self, app: Any) -> None:
        now = time.time()
        state = self.state
        state.environ["REQUEST_TIME_FLOAT"] = now
        state.environ["REQUEST_TIME"] = int(now)
        for name in TIME_ANCHORS:
            state.anchors[name] = now
        if isinstance(app, SupportsAnchors):
            try:
                app.set_timing_anchor(now)
            except Exception as e:
                logger.debug("StateResetter: cannot rewind app timing anchor: %s", e)

    def reset_memory(self, app: Any) -> None:
        current = resident_bytes()
        state = self.state
        for name in MEMORY_ANCHORS:
            state.anchors[name] = current
        if isinstance(app, SupportsAnchors):
            try:
                app.set_memory_anchor(current)
            except Exception as e:
                logger.debug("StateResetter: cannot rewind app memory anchor: %s", e)

    def reset_debug_state(self, app: Any) -> None:
        self._reset_trace(app)
        for name in DEBUG_COUNTERS:
            self.state.anchors[name] = 0
        self._reset_log(app)

    def reset_request_state(self, app: Any) -> None:
        anchors = self.state.anchors
        for name in REQUEST_MARKERS:
            anchors.pop(name, None)
        # Zero rather than drop: dashboards expect the keys to exist.
        if "cache_stats" in anchors:
            anchors["cache_stats"] = {"reads": 0, "writes": 0}
        if "db_queries" in anchors:
            anchors["db_queries"] = 0

    def _reset_trace(self, app: Any) -> None:
        anchors = self.state.anchors
        for name in TRACE_BUFFERS:
            anchors.pop(name, None)

        if not _has_service(app, "trace"):
            return
        try:
            trace = app.make("trace")
        except Exception as e:
            logger.debug("StateResetter: cannot resolve trace service: %s", e)
            return

        # The trace object is kept (listeners may be attached to it); only its buffers and anchors move.
        for method in ("reset", "clear_buffers"):
            fn = getattr(trace, method, None)
            if callable(fn):
                try:
                    fn()
                except Exception as e:
                    logger.debug("StateResetter: trace.%s() failed: %s", method, e)
        if isinstance(trace, SupportsAnchors):
            try:
                trace.set_timing_anchor(time.time())
                trace.set_memory_anchor(resident_bytes())
            except Exception as e:
                logger.debug("StateResetter: cannot rewind trace anchors: %s", e)

    def _reset_log(self, app: Any) -> None:
        if not _has_service(app, "log"):
            return
        try:
            log = app.make("log")
            clear = getattr(log, "clear", None)
            if callable(clear):
                clear()
        except Exception as e:
            logger.debug("StateResetter: cannot clear log service: %s", e)

    def get_reset_stats(self) -> Dict[str, Any]:
        anchors = self.state.anchors
        return {
            "reset_time": time.time(),
            "current_memory": resident_bytes(),
            "peak_memory": peak_resident_bytes(),
            "anchors_reset": {
                "start_time": "start_time" in anchors,
                "start_mem": "start_mem" in anchors,
                "trace_tabs": "trace_tabs" not in anchors,
                "trace_data": "trace_data" not in anchors,
            },
        }


def _has_service(app: Any, name: str) -> bool:
    has = getattr(app, "has", None)
    if not callable(has):
        return False
    try:
        return bool(has(name))
    except Exception:
        return False
