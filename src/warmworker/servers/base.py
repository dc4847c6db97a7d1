from __future__ import annotations

import copy
import logging
import os
import signal
import time
from typing import Any, Dict, List, Optional

from ..config import WorkerConfig
from ..container import ResidentApplication, SupportsRequestScope
from ..errors import ApplicationLoadError, ReloadNotSupportedError, WarmWorkerError
from ..hygiene import MemoryHygieneManager
from ..lifecycle import RequestLifecycleManager, request_services
from ..memory import memory_usage
from ..messages import Request, Response
from ..resetter import StateResetter
from ..state import RequestState, StateScope, create_scope
from .. import supervisor


logger = logging.getLogger(__name__)

# Worker processes rebuild their server from WARMWORKER_* env through this factory.
WORKER_APP_FACTORY = "warmworker.app:create_worker_app"

FORCED_GC_EVERY = 10


def request_state_from(request: Request) -> RequestState:
    """Request globals for one request: input maps plus a CGI-style environ."""
    environ: Dict[str, Any] = {
        "REQUEST_METHOD": request.method,
        "REQUEST_URI": request.uri,
        "PATH_INFO": request.path,
        "QUERY_STRING": request.query_string,
    }
    if request.remote_addr:
        environ["REMOTE_ADDR"] = request.remote_addr
    if request.remote_port is not None:
        environ["REMOTE_PORT"] = request.remote_port
    for k, v in (request.server or {}).items():
        environ[str(k).upper()] = v
    for k, v in (request.headers or {}).items():
        environ["HTTP_" + str(k).upper().replace("-", "_")] = v
    return RequestState(
        query=dict(request.query or {}),
        form=dict(request.form or {}),
        files=dict(request.files or {}),
        cookies=dict(request.cookies or {}),
        environ=environ,
    )


class BaseServer:
    """Binds one resident application to a server backend and owns its per-request managers.

    Subclasses choose how requests are scheduled (`serialized`), where request
    globals live (`scope_kind`) and what recycling means (`recycle`).
    """

    name = "base"
    scope_kind = "process"
    serialized = True
    multiprocess = False

    def __init__(self, app: ResidentApplication, config: Optional[WorkerConfig] = None) -> None:
        self._app = app
        self._cfg = config or WorkerConfig()
        self._scope: StateScope = create_scope(self.scope_kind)
        self._resetter = StateResetter(self._scope)
        self._lifecycle = RequestLifecycleManager(
            app,
            self._cfg,
            resetter=self._resetter,
            manage_registry=self.serialized or self._isolate_registry(app),
            concurrent=not self.serialized,
        )
        self._hygiene = MemoryHygieneManager(self._cfg, scope=self._scope, app=app)
        self._pid_file = supervisor.PidFile(supervisor.pid_file_path(self.name, directory=self._cfg.runtime_dir))
        self._owns_process = False
        self._bound_port: Optional[int] = None
        self._recycle_reason: Optional[str] = None
        self._recycles = 0
        self._handled = 0
        self._lifecycle.on_recycle(lambda _lm: self.request_recycle("max_requests"))

    @property
    def app(self) -> ResidentApplication:
        return self._app

    @property
    def config(self) -> WorkerConfig:
        return self._cfg

    @property
    def scope(self) -> StateScope:
        return self._scope

    @property
    def lifecycle(self) -> RequestLifecycleManager:
        return self._lifecycle

    @property
    def hygiene(self) -> MemoryHygieneManager:
        return self._hygiene

    @property
    def pid_file(self) -> supervisor.PidFile:
        return self._pid_file

    @property
    def recycles(self) -> int:
        return self._recycles

    @property
    def recycle_pending(self) -> Optional[str]:
        return self._recycle_reason

    def _isolate_registry(self, app: ResidentApplication) -> bool:
        """Keep per-request services in the request scope; False when the app cannot do that."""
        if isinstance(app, SupportsRequestScope):
            app.use_request_scope(self._scope, request_services(self._cfg))
            return True
        logger.warning(
            "%s: %s has no use_request_scope(); per-request services are left in its shared registry",
            self.name,
            type(app).__name__,
        )
        return False

    def attach_process(self) -> None:
        """Mark this server as owning the current OS process (set inside real workers)."""
        self._owns_process = True

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def boot_worker(self) -> List[str]:
        """Per-worker startup: warm configured services."""
        warmed = self._lifecycle.warm()
        if warmed:
            logger.info("%s worker pid=%s warmed: %s", self.name, os.getpid(), ", ".join(warmed))
        return warmed

    def handle_request(self, request: Request) -> Response:
        with self._scope.bind(request_state_from(request)):
            try:
                return self._lifecycle.handle(request)
            finally:
                self.cleanup_after_request()

    def cleanup_after_request(self) -> None:
        try:
            self._lifecycle.flush()
        except Exception as e:
            logger.warning("%s: lifecycle flush failed: %s", self.name, e)
        try:
            self._hygiene.flush()
        except Exception as e:
            logger.warning("%s: memory hygiene failed: %s", self.name, e)

        self._handled += 1
        if self._handled % FORCED_GC_EVERY == 0:
            self._hygiene.force_garbage_collection()

        if self._hygiene.is_memory_limit_exceeded():
            logger.warning(
                "%s: memory above %.0f%% of the limit; requesting recycle",
                self.name,
                self._cfg.memory_threshold * 100,
            )
            self.request_recycle("memory")

    def request_recycle(self, reason: str) -> None:
        if self._recycle_reason is None:
            self._recycle_reason = str(reason)

    def perform_pending_recycle(self) -> bool:
        """Run a requested recycle. Called once the response has been sent."""
        reason = self._recycle_reason
        if reason is None:
            return False
        self._recycle_reason = None
        self._recycles += 1
        logger.info("%s worker pid=%s recycling (%s)", self.name, os.getpid(), reason)
        if self._owns_process:
            self.recycle(reason)
        else:
            # Embedded servers (tests, programmatic use) never exit the host process.
            self.soft_restart()
        return True

    def recycle(self, reason: str) -> None:
        self.soft_restart()

    def soft_restart(self) -> None:
        """Start a fresh worker generation without leaving the process."""
        self._lifecycle.reset_request_count()
        self._hygiene.reset_request_count()
        self._hygiene.force_garbage_collection()
        try:
            self._lifecycle.flush()
        except Exception as e:
            logger.warning("%s: flush during soft restart failed: %s", self.name, e)
        self._hygiene.leak_detector.reset()

    # ------------------------------------------------------------------
    # Process control
    # ------------------------------------------------------------------

    def is_running(self) -> bool:
        if self._pid_file.is_running():
            return True
        self._pid_file.cleanup_stale()
        return False

    def start(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """Serve in the foreground until stopped."""
        others = [p for p in self._pid_file.live_pids() if p != supervisor.current_pid()]
        if others:
            raise WarmWorkerError(
                f"{self.name} server is already running (pid {others[0]}).\n"
                f"Stop it first: warmworker stop --server {self.name}"
            )
        self._pid_file.cleanup_stale()

        bind_host = str(host or self._cfg.host)
        bind_port = int(port if port is not None else self._cfg.port)
        self._bound_port = bind_port
        os.environ.update(self.worker_env(bind_host, bind_port))
        logger.info("Starting %s server on http://%s:%s (pid=%s)", self.name, bind_host, bind_port, os.getpid())
        try:
            self.serve(bind_host, bind_port)
        finally:
            self._pid_file.remove()

    def serve(self, host: str, port: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def claim_pid_file(self) -> None:
        """Record this process (and the bound port) once the listening socket exists."""
        self._pid_file.write([os.getpid()], port=self._bound_port)

    def stop(self) -> bool:
        """Graceful stop, forced kill for survivors, then a port sweep as last resort.

        Returns True when nothing survived. Without a PID file nothing is
        touched: the sweep only runs for a stale record (on the port it
        recorded) or when the kill ladder left processes behind.
        """
        recorded_port = self._pid_file.read_port()
        had_record = self._pid_file.exists()
        pids = self._pid_file.live_pids()
        if not pids:
            self._pid_file.remove()
            if had_record and recorded_port is not None:
                logger.warning("%s server PID file is stale; checking its port %s for orphans", self.name, recorded_port)
                return self._sweep_port(recorded_port, [])
            logger.info("%s server is not running (no live PID file entry)", self.name)
            return True

        logger.info("Stopping %s server (pids=%s)", self.name, pids)
        survivors = supervisor.terminate_pids(pids, timeout_s=self._cfg.stop_timeout)
        self._pid_file.remove()
        if not survivors:
            return True
        return self._sweep_port(recorded_port or self._cfg.port, survivors)

    def _sweep_port(self, port: int, survivors: List[int]) -> bool:
        leftovers = supervisor.find_pids_by_port(port)
        if leftovers:
            logger.warning("Port %s still held by pids=%s; killing", port, leftovers)
            killed = supervisor.kill_process_by_port(port, force=True)
        else:
            killed = []
        remaining = [p for p in dict.fromkeys([*survivors, *leftovers]) if p not in killed]
        if remaining:
            logger.error("%s server: processes %s survived stop", self.name, remaining)
        return not remaining

    def reload(self) -> None:
        """Ask the running supervisor to replace its workers."""
        pid = self._pid_file.primary_pid()
        if pid is None or not supervisor.process_exists(pid):
            raise WarmWorkerError(f"{self.name} server is not running; nothing to reload.")
        sighup = getattr(signal, "SIGHUP", None)
        if sighup is None:
            raise ReloadNotSupportedError(
                f"{self.name} server cannot reload on this platform. Use: warmworker stop, then warmworker start"
            )
        os.kill(pid, sighup)
        logger.info("Sent SIGHUP to %s server (pid=%s)", self.name, pid)

    def status(self) -> Dict[str, Any]:
        pids = self._pid_file.live_pids()
        running = bool(pids)
        if not running:
            self._pid_file.cleanup_stale()
        pid = pids[0] if pids else None
        mem = None
        if pid:
            try:
                mem = memory_usage(configured_limit=self._cfg.memory_limit, pid=pid)
            except Exception as e:
                logger.debug("%s: cannot read memory of pid=%s: %s", self.name, pid, e)
        out: Dict[str, Any] = {
            "server": self.name,
            "running": running,
            "pid": pid,
            "pids": pids,
            "pid_file": str(self._pid_file.path),
            "host": self._cfg.host,
            "port": self._pid_file.read_port() or self._cfg.port,
            "memory_usage": mem,
            "request_count": self._lifecycle.request_count,
            "max_requests": self._lifecycle.max_requests,
            "recycles": self._recycles,
            "checked_at": time.time(),
        }
        out.update(self.backend_status())
        return out

    def backend_status(self) -> Dict[str, Any]:
        return {}

    # ------------------------------------------------------------------
    # uvicorn plumbing
    # ------------------------------------------------------------------

    def worker_env(self, host: str, port: int) -> Dict[str, str]:
        env = self._cfg.to_env()
        env["WARMWORKER_SERVER"] = self.name
        env["WARMWORKER_HOST"] = host
        env["WARMWORKER_PORT"] = str(port)
        return env

    def uvicorn_config(self, host: str, port: int, *, workers: int = 1, log_config: Optional[dict] = None):
        import uvicorn

        if self.multiprocess and not self._cfg.app:
            raise ApplicationLoadError(
                "Multi-process servers load the application in each worker.\n"
                "Pass it as an import string: warmworker start --app package.module:app"
            )
        kwargs: Dict[str, Any] = {
            "host": host,
            "port": int(port),
            "workers": int(workers),
            "lifespan": "on",
        }
        if log_config is None:
            log_config = build_uvicorn_log_config()
        if log_config:
            kwargs["log_config"] = log_config
        if self.multiprocess:
            return uvicorn.Config(WORKER_APP_FACTORY, factory=True, **kwargs)

        from ..app import create_app

        return uvicorn.Config(create_app(self), **kwargs)

    def serve_multiprocess(self, host: str, port: int) -> None:
        """Bind once, record the supervisor PID, then let uvicorn keep `workers` processes alive."""
        import uvicorn
        from uvicorn.supervisors import Multiprocess

        config = self.uvicorn_config(host, port, workers=self._cfg.workers)
        server = uvicorn.Server(config)
        sock = config.bind_socket()
        try:
            self.claim_pid_file()
            Multiprocess(config, target=server.run, sockets=[sock]).run()
        finally:
            sock.close()


def build_uvicorn_log_config() -> dict:
    """uvicorn's logging config with warmworker's console format."""
    try:
        import uvicorn.config

        base = getattr(uvicorn.config, "LOGGING_CONFIG", None)
        if not isinstance(base, dict):
            return {}
        log_config = copy.deepcopy(base)
    except Exception:
        return {}

    datefmt = "%H:%M:%S"
    default_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    access_fmt = '%(asctime)s [%(levelname)s] %(name)s: %(client_addr)s - "%(request_line)s" %(status_code)s'
    try:
        fmts = log_config.setdefault("formatters", {})
        fmts["default"] = {"()": "uvicorn.logging.DefaultFormatter", "fmt": default_fmt, "datefmt": datefmt}
        fmts["access"] = {"()": "uvicorn.logging.AccessFormatter", "fmt": access_fmt, "datefmt": datefmt}
    except Exception:
        return log_config

    log_file = str(os.getenv("WARMWORKER_LOG_FILE") or "").strip()
    if log_file:
        handlers = log_config.setdefault("handlers", {})
        handlers["file"] = {
            "class": "logging.FileHandler",
            "filename": log_file,
            "formatter": "default",
            "encoding": "utf-8",
        }
        for logger_name in ("uvicorn", "uvicorn.access"):
            entry = log_config.setdefault("loggers", {}).setdefault(logger_name, {})
            entry["handlers"] = list(entry.get("handlers") or []) + ["file"]
    return log_config
