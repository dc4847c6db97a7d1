from __future__ import annotations

import logging
import os
from typing import Any, Dict, List

from .base import BaseServer


logger = logging.getLogger(__name__)


class SerialServer(BaseServer):
    """Multi-process uvicorn with one request at a time per worker.

    Workers share process-global request state and record their PIDs in the PID
    file so `stop` can reach each of them. Recycling is a soft restart.
    """

    name = "serial"
    scope_kind = "process"
    serialized = True
    multiprocess = True

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._soft_restarts = 0

    @property
    def soft_restarts(self) -> int:
        return self._soft_restarts

    def serve(self, host: str, port: int) -> None:
        self.serve_multiprocess(host, port)

    def boot_worker(self) -> List[str]:
        if self._owns_process:
            try:
                self.pid_file.append(os.getpid())
            except Exception as e:
                logger.warning("serial worker pid=%s cannot record itself in %s: %s", os.getpid(), self.pid_file.path, e)
        return super().boot_worker()

    def soft_restart(self) -> None:
        super().soft_restart()
        self._soft_restarts += 1
        logger.info("serial worker pid=%s soft restart #%s", os.getpid(), self._soft_restarts)

    def backend_status(self) -> Dict[str, Any]:
        return {
            "workers": self.config.workers,
            "state_scope": self.scope.kind,
            "recycle": "soft-restart",
            "reload": "sighup",
            "soft_restarts": self._soft_restarts,
        }
