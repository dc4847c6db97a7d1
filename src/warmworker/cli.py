from __future__ import annotations

import argparse
import json
import logging
import os
import platform
import sys
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Dict, List, Optional


def _stderr(line: str) -> None:
    print(str(line), file=sys.stderr)


def _configure_console_logging(level: int = logging.INFO, *, log_file: Optional[str] = None) -> None:
    """Best-effort console logging config (plus an optional file handler)."""
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%H:%M:%S"
    formatter = logging.Formatter(fmt, datefmt=datefmt)
    root = logging.getLogger()
    if root.handlers:
        for h in list(root.handlers):
            try:
                h.setFormatter(formatter)
            except Exception:
                continue
        try:
            root.setLevel(int(level))
        except Exception:
            pass
    else:
        logging.basicConfig(level=int(level), format=fmt, datefmt=datefmt)
        for h in list(logging.getLogger().handlers):
            try:
                h.setFormatter(formatter)
            except Exception:
                continue

    if log_file:
        path = Path(log_file).expanduser()
        if any(isinstance(h, logging.FileHandler) and Path(h.baseFilename) == path.resolve() for h in root.handlers):
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(path, encoding="utf-8")
            fh.setFormatter(formatter)
            root.addHandler(fh)
        except Exception as e:
            _stderr(f"[WARN] Cannot open log file {path}: {e}")


def _add_common_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--server", default=None, help="Server type: coroutine|serial|async (default: WARMWORKER_SERVER or coroutine)")
    p.add_argument("--config", default=None, help="JSON config file (env vars and flags override it)")
    p.add_argument("--host", default=None, help="Bind host (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=None, help="Bind port (default: 8000)")
    p.add_argument("--runtime-dir", default=None, help="Directory holding PID files (default: <tmp>/warmworker)")
    p.add_argument("--json", action="store_true", help="Emit machine-readable JSON output")


def _build_config(args: argparse.Namespace):
    """defaults < --config file < WARMWORKER_* env < command-line flags."""
    from .config import WorkerConfig

    base = WorkerConfig()
    cfg_path = getattr(args, "config", None)
    if cfg_path:
        try:
            base = WorkerConfig.from_file(Path(cfg_path))
        except FileNotFoundError:
            raise SystemExit(f"Config file not found: {cfg_path}")
        except ValueError as e:
            raise SystemExit(f"Invalid config file {cfg_path}: {e}")
    cfg = WorkerConfig.from_env(base=base)

    overrides: Dict[str, Any] = {}
    for attr, key in (
        ("server", "server"),
        ("host", "host"),
        ("port", "port"),
        ("workers", "workers"),
        ("max_requests", "max_requests"),
        ("app", "app"),
        ("runtime_dir", "runtime_dir"),
        ("log_file", "log_file"),
    ):
        v = getattr(args, attr, None)
        if v is not None:
            overrides[key] = v
    if getattr(args, "debug", False):
        overrides["debug"] = True
    return WorkerConfig.from_mapping(overrides, base=cfg) if overrides else cfg


def _control_server(cfg):
    """A server object for out-of-band commands (stop/reload/status); it never serves."""
    from .container import Application
    from .servers import create_server

    return create_server(Application(), cfg)


def _fetch_json(url: str, *, timeout_s: float = 2.0) -> Optional[Dict[str, Any]]:
    req = urllib.request.Request(url, headers={"accept": "application/json"}, method="GET")
    try:
        with urllib.request.urlopen(req, timeout=float(timeout_s)) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
    except (urllib.error.URLError, OSError):
        return None
    try:
        obj = json.loads(raw)
    except Exception:
        return None
    return obj if isinstance(obj, dict) else None


def _control_url(cfg, endpoint: str, *, port: Optional[int] = None) -> str:
    host = str(cfg.host or "127.0.0.1")
    if host in {"0.0.0.0", "::", ""}:
        host = "127.0.0.1"
    return f"http://{host}:{int(port or cfg.port)}/_warmworker/{endpoint}"


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True, default=str))


def _print_rows(title: str, rows: List[tuple]) -> None:
    print(title)
    width = max((len(str(k)) for k, _ in rows), default=0)
    for k, v in rows:
        print(f"  {str(k).ljust(width)}  {v}")
    print("")


def _cmd_start(args: argparse.Namespace, cfg) -> None:
    from .container import load_application
    from .servers import server_class

    server_cls = server_class(cfg.server)
    if not cfg.app:
        raise SystemExit(
            "No application given.\n\n"
            "Point warmworker at your resident application:\n"
            "  warmworker start --app package.module:app\n"
            "or set WARMWORKER_APP=package.module:app"
        )
    app = load_application(cfg.app)
    server = server_cls(app, cfg)
    server.start(cfg.host, cfg.port)


def _cmd_stop(args: argparse.Namespace, cfg) -> None:
    server = _control_server(cfg)
    ok = server.stop()
    if not ok:
        raise SystemExit(
            f"{server.name} server did not stop cleanly.\n"
            f"Check for leftover processes on port {cfg.port} (e.g. `lsof -i:{cfg.port}`)."
        )
    print(f"{server.name} server stopped.")


def _cmd_reload(args: argparse.Namespace, cfg) -> None:
    server = _control_server(cfg)
    server.reload()
    print(f"{server.name} server reloading (workers will be replaced).")


def _cmd_status(args: argparse.Namespace, cfg) -> None:
    server = _control_server(cfg)
    out = server.status()
    if out.get("running"):
        live = _fetch_json(_control_url(cfg, "status", port=out.get("port")))
        if live is not None:
            # The supervising process never serves requests; take counters from a worker.
            out["request_count"] = live.get("request_count", out.get("request_count"))
            out["max_requests"] = live.get("max_requests", out.get("max_requests"))
            out["worker"] = live
    if bool(args.json):
        _print_json(out)
        return
    if not out.get("running"):
        print(f"{server.name} server is not running.")
        return
    mem = out.get("memory_usage") or {}
    _print_rows(
        f"{server.name} server status:",
        [
            ("Status", "running"),
            ("PID", out.get("pid")),
            ("PIDs", ", ".join(str(p) for p in out.get("pids") or [])),
            ("Listen", f"{out.get('host')}:{out.get('port')}"),
            ("Memory", mem.get("memory_usage_formatted", "?")),
            ("Requests (worker)", f"{out.get('request_count')}/{out.get('max_requests')}"),
            ("PID file", out.get("pid_file")),
        ],
    )


def _cmd_memory(args: argparse.Namespace, cfg) -> None:
    from .hygiene import MemoryHygieneManager

    server = _control_server(cfg)
    live = None
    if server.is_running():
        live = _fetch_json(_control_url(cfg, "memory", port=server.pid_file.read_port()))
    if live is not None:
        out = dict(live)
        out["source"] = "worker"
    else:
        hygiene = MemoryHygieneManager(cfg)
        detector = hygiene.leak_detector
        out = {
            "source": "local",
            "memory_usage": hygiene.memory_usage(),
            "limit_exceeded": hygiene.is_memory_limit_exceeded(),
            "threshold": cfg.memory_threshold,
            "leak": detector.detect_leak().to_dict(),
            "stats": detector.get_memory_stats(),
            "suggestions": detector.get_cleanup_suggestions(),
        }
    if bool(args.json):
        _print_json(out)
        return

    from .memory import format_bytes

    usage = out.get("memory_usage") or {}
    rows = [
        ("Current Usage", usage.get("memory_usage_formatted")),
        ("Peak Usage", usage.get("memory_peak_usage_formatted")),
        ("Memory Limit", usage.get("memory_limit")),
    ]
    limit_bytes = usage.get("memory_limit_bytes")
    if isinstance(limit_bytes, int) and limit_bytes > 0:
        rows.append(("Usage Percentage", f"{round(usage.get('memory_usage', 0) / limit_bytes * 100, 2)}%"))
    _print_rows(f"Memory ({out['source']}):", rows)

    leak = out.get("leak") or {}
    if leak.get("detected"):
        print("Memory leak detected!")
        print(f"  Growth: {leak.get('growth_formatted')} over {leak.get('span_requests')} requests")
        print(f"  Average per request: {format_bytes(leak.get('growth_per_request') or 0)}")
    else:
        print(str(leak.get("message") or "No significant memory leak detected"))
    suggestions = out.get("suggestions") or []
    if suggestions:
        print("Cleanup suggestions:")
        for s in suggestions:
            print(f"  - {s}")


def _cmd_check(args: argparse.Namespace, cfg) -> None:
    from .supervisor import recommended_server, server_compatibility

    compat = server_compatibility()
    recommended = recommended_server()
    out = {
        "system": {
            "os": platform.system(),
            "platform": sys.platform,
            "python_version": platform.python_version(),
            "implementation": platform.python_implementation(),
            "architecture": platform.machine(),
        },
        "servers": compat,
        "recommended": recommended,
    }
    if bool(args.json):
        _print_json(out)
        return
    _print_rows("System:", list(out["system"].items()))
    print("Servers:")
    for name, info in compat.items():
        flags = [
            "available" if info["available"] else "unavailable",
            "windows ok" if info["windows_support"] else "windows limited",
        ]
        if info["recommended"]:
            flags.append("recommended")
        print(f"  {name:<10} {', '.join(flags)}  ({info['note']})")
    print("")
    if compat[recommended]["available"]:
        print(f"Recommended server: {recommended}")
        print(f"  Start with: warmworker start --server {recommended} --app package.module:app")
    else:
        print("uvicorn is not installed; no server can start.")
        print('  Install with: pip install "uvicorn[standard]"')


def _cmd_debug(args: argparse.Namespace, cfg) -> None:
    from .debug import debug_info

    app = None
    if cfg.app:
        from .container import load_application

        app = load_application(cfg.app)
    out = debug_info(cfg, app)
    out["config_debug"] = cfg.debug
    if bool(args.json):
        _print_json(out)
        return
    _print_rows(
        "Debug detection:",
        [
            ("Debug mode", out["debug_mode"]),
            ("Trace tools", out["has_trace_tools"]),
            ("Preserve output", out["should_preserve_output"]),
            ("Preserved services", ", ".join(out["debug_services"]) or "(none)"),
            ("Loaded trace modules", ", ".join(out["loaded_trace_modules"]) or "(none)"),
            ("WARMWORKER_DEBUG", out["env"]["WARMWORKER_DEBUG"]),
            ("APP_DEBUG", out["env"]["APP_DEBUG"]),
        ],
    )


def _cmd_reset_test(args: argparse.Namespace, cfg) -> None:
    from .container import Application
    from .memory import format_bytes, resident_bytes
    from .resetter import StateResetter

    app = Application(debug=True)
    resetter = StateResetter()
    anchors = resetter.state.anchors
    anchors.update({"trace_tabs": ["base"], "trace_data": [{"stale": True}], "request_id": "stale"})
    before = {
        "time": time.time(),
        "memory": format_bytes(resident_bytes()),
        "app_timing_anchor": app.get_timing_anchor(),
        "app_memory_anchor": app.get_memory_anchor(),
        "anchors": sorted(anchors.keys()),
    }
    time.sleep(0.01)
    resetter.reset_app(app)
    after = {
        "time": time.time(),
        "memory": format_bytes(resident_bytes()),
        "app_timing_anchor": app.get_timing_anchor(),
        "app_memory_anchor": app.get_memory_anchor(),
        "anchors": sorted(resetter.state.anchors.keys()),
    }
    stats = resetter.get_reset_stats()
    out = {"before": before, "after": after, "stats": stats}
    if bool(args.json):
        _print_json(out)
        return
    _print_rows("Before reset:", list(before.items()))
    _print_rows("After reset:", list(after.items()))
    _print_rows("Anchors reset:", list(stats["anchors_reset"].items()))


_COMMANDS = {
    "start": _cmd_start,
    "stop": _cmd_stop,
    "reload": _cmd_reload,
    "status": _cmd_status,
    "memory": _cmd_memory,
    "check": _cmd_check,
    "debug": _cmd_debug,
    "reset-test": _cmd_reset_test,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="warmworker", description="Resident application worker (start/stop/reload/inspect)")
    parser.add_argument("--log-level", default=os.getenv("WARMWORKER_LOG_LEVEL", "INFO"), help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    start = sub.add_parser("start", help="Serve the application in the foreground")
    _add_common_options(start)
    start.add_argument("--app", default=None, help='Resident application as "package.module:attribute"')
    start.add_argument("--workers", type=int, default=None, help="Worker processes (coroutine/serial; default: 4)")
    start.add_argument("--max-requests", type=int, default=None, help="Requests per worker before recycling (default: 500)")
    start.add_argument("--log-file", default=None, help="Also write logs to this file")
    start.add_argument("--debug", action="store_true", help="Force debug mode (per-request state reset, output preserved)")

    stop = sub.add_parser("stop", help="Stop a running server (graceful, then forced, then port sweep)")
    _add_common_options(stop)

    reload = sub.add_parser("reload", help="Replace the workers of a running server")
    _add_common_options(reload)

    status = sub.add_parser("status", help="Show whether a server is running and its memory")
    _add_common_options(status)

    memory = sub.add_parser("memory", help="Show memory usage and leak detection")
    _add_common_options(memory)

    check = sub.add_parser("check", help="Check which server types this system supports")
    check.add_argument("--json", action="store_true", help="Emit machine-readable JSON output")

    debug = sub.add_parser("debug", help="Show how debug mode is being detected")
    _add_common_options(debug)
    debug.add_argument("--app", default=None, help='Resident application as "package.module:attribute"')

    reset_test = sub.add_parser("reset-test", help="Exercise the per-request state reset and show its effect")
    reset_test.add_argument("--json", action="store_true", help="Emit machine-readable JSON output")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = getattr(logging, str(args.log_level or "INFO").strip().upper(), logging.INFO)
    cfg = _build_config(args)
    _configure_console_logging(level if isinstance(level, int) else logging.INFO, log_file=cfg.log_file)

    from .errors import UnsupportedServerError, WarmWorkerError

    handler = _COMMANDS.get(str(args.cmd))
    if handler is None:
        raise SystemExit(2)
    try:
        handler(args, cfg)
    except UnsupportedServerError as e:
        raise SystemExit(f"{e}\nPick one with --server.")
    except WarmWorkerError as e:
        raise SystemExit(str(e))
    except KeyboardInterrupt:
        _stderr("Interrupted.")
        raise SystemExit(130)


if __name__ == "__main__":
    main()
