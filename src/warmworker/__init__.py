"""warmworker: keep an application resident across requests without leaking state between them."""

from __future__ import annotations

__version__ = "0.1.0"

from .config import GcConfig, WorkerConfig
from .container import Application, ServiceContainer, load_application
from .errors import ApplicationLoadError, ReloadNotSupportedError, UnsupportedServerError, WarmWorkerError
from .hygiene import MemoryHygieneManager
from .leak_detector import LeakDetector, LeakVerdict
from .lifecycle import RequestLifecycleManager
from .messages import Request, Response
from .resetter import StateResetter

__all__ = [
    "Application",
    "ApplicationLoadError",
    "GcConfig",
    "LeakDetector",
    "LeakVerdict",
    "MemoryHygieneManager",
    "ReloadNotSupportedError",
    "Request",
    "RequestLifecycleManager",
    "Response",
    "ServiceContainer",
    "StateResetter",
    "UnsupportedServerError",
    "WarmWorkerError",
    "WorkerConfig",
    "__version__",
    "load_application",
]
