from __future__ import annotations

import os
import sys
from typing import Any, Dict, List, Optional

from .config import WorkerConfig


_TRUE = {"1", "true", "yes", "on"}

# Modules whose presence means a debugger/profiler may be attached to this process.
_TRACE_MODULES = ("debugpy", "pydevd", "yappi", "pyinstrument")

_DEBUG_SERVICES = ("log", "trace", "debug", "middleware")


def _env_flag(name: str) -> bool:
    return str(os.getenv(name) or "").strip().lower() in _TRUE


def has_trace_tools() -> bool:
    """True when a tracer/profiler is active or a debugger module is loaded."""
    if sys.gettrace() is not None or sys.getprofile() is not None:
        return True
    return any(name in sys.modules for name in _TRACE_MODULES)


def _explicit_debug(config: Optional[WorkerConfig], app: Any) -> Optional[bool]:
    if config is not None and config.debug is not None:
        return bool(config.debug)
    if _env_flag("WARMWORKER_DEBUG") or _env_flag("APP_DEBUG"):
        return True

    is_debug = getattr(app, "is_debug", None)
    if callable(is_debug):
        try:
            if bool(is_debug()):
                return True
        except Exception:
            pass
    return None


def is_debug_mode(config: Optional[WorkerConfig] = None, app: Any = None) -> bool:
    """An explicit `debug` setting wins; otherwise env flags, the app, then attached tracers."""
    explicit = _explicit_debug(config, app)
    if explicit is not None:
        return explicit
    return has_trace_tools()


def expose_error_details(config: Optional[WorkerConfig] = None, app: Any = None) -> bool:
    """Error messages reach clients only when debug mode was switched on explicitly.

    Coverage, APM profilers and debuggers keep the per-request resets of
    `is_debug_mode` but never make the worker leak exception text.
    """
    return bool(_explicit_debug(config, app))


def should_preserve_output(config: Optional[WorkerConfig] = None, app: Any = None) -> bool:
    return is_debug_mode(config, app) or has_trace_tools()


def debug_services(config: Optional[WorkerConfig] = None, app: Any = None) -> List[str]:
    """Services that per-request cleanup must leave alone while debugging."""
    if is_debug_mode(config, app):
        return list(_DEBUG_SERVICES)
    return []


def debug_info(config: Optional[WorkerConfig] = None, app: Any = None) -> Dict[str, Any]:
    return {
        "debug_mode": is_debug_mode(config, app),
        "has_trace_tools": has_trace_tools(),
        "should_preserve_output": should_preserve_output(config, app),
        "expose_error_details": expose_error_details(config, app),
        "debug_services": debug_services(config, app),
        "tracer_active": sys.gettrace() is not None,
        "profiler_active": sys.getprofile() is not None,
        "loaded_trace_modules": [m for m in _TRACE_MODULES if m in sys.modules],
        "env": {
            "WARMWORKER_DEBUG": os.getenv("WARMWORKER_DEBUG", "undefined"),
            "APP_DEBUG": os.getenv("APP_DEBUG", "undefined"),
        },
    }
