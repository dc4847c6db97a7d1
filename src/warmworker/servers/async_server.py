from __future__ import annotations

import logging
import os
import sys
import threading
import time
from typing import Any, Dict

from ..errors import ReloadNotSupportedError
from .base import BaseServer


logger = logging.getLogger(__name__)


def _schedule_execv(*, delay_s: float) -> None:
    """Replace this process with a fresh copy of the same command line."""

    def _do() -> None:
        time.sleep(max(0.0, float(delay_s)))
        argv = list(sys.argv)
        exe = argv[0] if argv else ""
        try:
            if exe and os.path.exists(exe) and os.access(exe, os.X_OK):
                os.execv(exe, argv)
                return
        except Exception:
            pass
        try:
            os.execv(sys.executable, [sys.executable, "-m", "warmworker.cli", *argv[1:]])
        except Exception:
            # Last resort: exit (requires external supervisor).
            os._exit(0)

    t = threading.Thread(target=_do, daemon=True)
    t.start()


class AsyncServer(BaseServer):
    """Single-process uvicorn event loop; requests are serialized.

    Recycling re-executes the process (same PID on POSIX). There is no
    supervisor to reload workers, so `reload()` is refused.
    """

    name = "async"
    scope_kind = "process"
    serialized = True
    multiprocess = False

    respawn_delay_s = 0.25

    def serve(self, host: str, port: int) -> None:
        import uvicorn

        owner = self

        class _Server(uvicorn.Server):
            async def startup(self, sockets=None) -> None:
                await super().startup(sockets=sockets)
                # Only claim the PID file once the socket is actually bound.
                if self.started:
                    owner.claim_pid_file()

        self.attach_process()
        _Server(self.uvicorn_config(host, port, workers=1)).run()

    def recycle(self, reason: str) -> None:
        logger.info("async server pid=%s re-executing (%s)", os.getpid(), reason)
        _schedule_execv(delay_s=self.respawn_delay_s)

    def reload(self) -> None:
        raise ReloadNotSupportedError(
            "The async server cannot reload in place.\n"
            "Restart it instead: warmworker stop --server async && warmworker start --server async"
        )

    def backend_status(self) -> Dict[str, Any]:
        return {
            "workers": 1,
            "state_scope": self.scope.kind,
            "recycle": "re-exec",
            "reload": "unsupported",
        }
