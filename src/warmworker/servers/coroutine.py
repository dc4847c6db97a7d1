from __future__ import annotations

import logging
import os
import signal
from typing import Any, Dict

from .base import BaseServer


logger = logging.getLogger(__name__)


class CoroutineServer(BaseServer):
    """Multi-process uvicorn; each worker serves many requests concurrently.

    Request globals are bound per request in a ContextVar. Recycling exits the
    worker after the response is sent; uvicorn's supervisor spawns a replacement.
    """

    name = "coroutine"
    scope_kind = "context"
    serialized = False
    multiprocess = True

    def serve(self, host: str, port: int) -> None:
        self.serve_multiprocess(host, port)

    def recycle(self, reason: str) -> None:
        # uvicorn treats SIGTERM as a graceful shutdown: in-flight requests finish first.
        logger.info("coroutine worker pid=%s exiting for replacement (%s)", os.getpid(), reason)
        os.kill(os.getpid(), signal.SIGTERM)

    def backend_status(self) -> Dict[str, Any]:
        return {
            "workers": self.config.workers,
            "state_scope": self.scope.kind,
            "recycle": "respawn-worker",
            "reload": "sighup",
        }
