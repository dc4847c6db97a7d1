from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple


_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

SUPPORTED_SERVERS: Tuple[str, ...] = ("coroutine", "serial", "async")


def _env(name: str) -> Optional[str]:
    v = os.getenv(name)
    if v is None or not str(v).strip():
        return None
    return str(v).strip()


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value if value is not None else "").strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    return default


def _as_int(value: Any, default: int, *, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    try:
        out = int(value)
    except Exception:
        out = int(default)
    if minimum is not None:
        out = max(minimum, out)
    if maximum is not None:
        out = min(maximum, out)
    return out


def _as_float(value: Any, default: float, *, minimum: Optional[float] = None, maximum: Optional[float] = None) -> float:
    try:
        out = float(value)
    except Exception:
        out = float(default)
    if minimum is not None:
        out = max(minimum, out)
    if maximum is not None:
        out = min(maximum, out)
    return out


def _as_names(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        return ()
    out = []
    for item in items:
        if not isinstance(item, str):
            continue
        s = item.strip()
        if s and s not in out:
            out.append(s)
    return tuple(out)


@dataclass(frozen=True)
class GcConfig:
    enabled: bool = True
    probability: int = 50
    cycles: int = 1000


@dataclass(frozen=True)
class WorkerConfig:
    """Settings shared by the CLI, the server adapters and the per-request managers."""

    server: str = "coroutine"
    host: str = "127.0.0.1"
    port: int = 8000
    workers: int = 4
    max_requests: int = 500
    memory_threshold: float = 0.8
    memory_limit: Optional[str] = None
    warm: Tuple[str, ...] = ()
    flush: Tuple[str, ...] = ("cache", "session")
    gc: GcConfig = field(default_factory=GcConfig)
    leak_threshold: int = 1024 * 1024
    stop_timeout: float = 5.0
    runtime_dir: Optional[str] = None
    log_file: Optional[str] = None
    debug: Optional[bool] = None
    app: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, base: Optional["WorkerConfig"] = None) -> "WorkerConfig":
        """Build a config from a mapping; unrecognized keys are ignored."""
        cfg = base or cls()
        if not isinstance(data, Mapping):
            return cfg

        gc_raw = data.get("gc")
        if not isinstance(gc_raw, Mapping):
            gc_raw = data.get("garbage_collection")
        gc_cfg = cfg.gc
        if isinstance(gc_raw, Mapping):
            gc_cfg = GcConfig(
                enabled=_as_bool(gc_raw.get("enabled"), gc_cfg.enabled),
                probability=_as_int(gc_raw.get("probability", gc_cfg.probability), gc_cfg.probability, minimum=0, maximum=100),
                cycles=_as_int(gc_raw.get("cycles", gc_cfg.cycles), gc_cfg.cycles, minimum=1),
            )

        debug_raw = data.get("debug", cfg.debug)
        debug = None if debug_raw is None else _as_bool(debug_raw, False)

        return replace(
            cfg,
            server=str(data.get("server") or cfg.server).strip().lower(),
            host=str(data.get("host") or cfg.host).strip(),
            port=_as_int(data.get("port", cfg.port), cfg.port, minimum=0, maximum=65535),
            workers=_as_int(data.get("workers", cfg.workers), cfg.workers, minimum=1),
            max_requests=_as_int(data.get("max_requests", cfg.max_requests), cfg.max_requests, minimum=1),
            memory_threshold=_as_float(
                data.get("memory_threshold", cfg.memory_threshold), cfg.memory_threshold, minimum=0.0, maximum=1.0
            ),
            memory_limit=str(data["memory_limit"]).strip() if data.get("memory_limit") is not None else cfg.memory_limit,
            warm=_as_names(data["warm"]) if "warm" in data else cfg.warm,
            flush=_as_names(data["flush"]) if "flush" in data else cfg.flush,
            gc=gc_cfg,
            leak_threshold=_as_int(data.get("leak_threshold", cfg.leak_threshold), cfg.leak_threshold, minimum=0),
            stop_timeout=_as_float(data.get("stop_timeout", cfg.stop_timeout), cfg.stop_timeout, minimum=0.0),
            runtime_dir=str(data.get("runtime_dir") or "").strip() or cfg.runtime_dir,
            log_file=str(data.get("log_file") or "").strip() or cfg.log_file,
            debug=debug,
            app=str(data.get("app") or "").strip() or cfg.app,
        )

    @classmethod
    def from_env(cls, *, base: Optional["WorkerConfig"] = None) -> "WorkerConfig":
        """Read `WARMWORKER_*` variables on top of `base` (or the defaults)."""
        raw: Dict[str, Any] = {}
        simple = {
            "server": "WARMWORKER_SERVER",
            "host": "WARMWORKER_HOST",
            "port": "WARMWORKER_PORT",
            "workers": "WARMWORKER_WORKERS",
            "max_requests": "WARMWORKER_MAX_REQUESTS",
            "memory_threshold": "WARMWORKER_MEMORY_THRESHOLD",
            "memory_limit": "WARMWORKER_MEMORY_LIMIT",
            "leak_threshold": "WARMWORKER_LEAK_THRESHOLD",
            "stop_timeout": "WARMWORKER_STOP_TIMEOUT",
            "runtime_dir": "WARMWORKER_RUNTIME_DIR",
            "log_file": "WARMWORKER_LOG_FILE",
            "debug": "WARMWORKER_DEBUG",
            "app": "WARMWORKER_APP",
        }
        for key, env_name in simple.items():
            v = _env(env_name)
            if v is not None:
                raw[key] = v

        # Empty lists are meaningful here (e.g. "flush nothing").
        for key, env_name in (("warm", "WARMWORKER_WARM"), ("flush", "WARMWORKER_FLUSH")):
            v = os.getenv(env_name)
            if v is not None:
                raw[key] = v

        gc_raw: Dict[str, Any] = {}
        for key, env_name in (
            ("enabled", "WARMWORKER_GC_ENABLED"),
            ("probability", "WARMWORKER_GC_PROBABILITY"),
            ("cycles", "WARMWORKER_GC_CYCLES"),
        ):
            v = _env(env_name)
            if v is not None:
                gc_raw[key] = v
        if gc_raw:
            raw["gc"] = gc_raw

        return cls.from_mapping(raw, base=base)

    @classmethod
    def from_file(cls, path: Path, *, base: Optional["WorkerConfig"] = None) -> "WorkerConfig":
        raw = Path(path).expanduser().read_text(encoding="utf-8", errors="replace")
        obj = json.loads(raw)
        if not isinstance(obj, dict):
            raise ValueError("warmworker config must be a JSON object")
        return cls.from_mapping(obj, base=base)

    def to_env(self) -> Dict[str, str]:
        """Environment that lets worker processes rebuild this config via `from_env()`."""
        env = {
            "WARMWORKER_SERVER": self.server,
            "WARMWORKER_HOST": self.host,
            "WARMWORKER_PORT": str(self.port),
            "WARMWORKER_WORKERS": str(self.workers),
            "WARMWORKER_MAX_REQUESTS": str(self.max_requests),
            "WARMWORKER_MEMORY_THRESHOLD": str(self.memory_threshold),
            "WARMWORKER_WARM": ",".join(self.warm),
            "WARMWORKER_FLUSH": ",".join(self.flush),
            "WARMWORKER_GC_ENABLED": "1" if self.gc.enabled else "0",
            "WARMWORKER_GC_PROBABILITY": str(self.gc.probability),
            "WARMWORKER_GC_CYCLES": str(self.gc.cycles),
            "WARMWORKER_LEAK_THRESHOLD": str(self.leak_threshold),
            "WARMWORKER_STOP_TIMEOUT": str(self.stop_timeout),
        }
        for key, value in (
            ("WARMWORKER_MEMORY_LIMIT", self.memory_limit),
            ("WARMWORKER_RUNTIME_DIR", self.runtime_dir),
            ("WARMWORKER_LOG_FILE", self.log_file),
            ("WARMWORKER_APP", self.app),
        ):
            if value:
                env[key] = str(value)
        if self.debug is not None:
            env["WARMWORKER_DEBUG"] = "1" if self.debug else "0"
        return env
