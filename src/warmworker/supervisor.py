"""Cross-platform process primitives and the PID-file record.

POSIX uses signals (process groups for trees, `lsof` for port lookups);
Windows uses `taskkill` and `netstat -ano`. Everything here is stateless: the
OS and the PID file on disk are the only sources of truth.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import importlib.util
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import psutil


logger = logging.getLogger(__name__)

_NETSTAT_PID_RE = re.compile(r"\s(\d+)\s*$")


def is_windows() -> bool:
    return sys.platform == "win32"


def current_pid() -> int:
    return os.getpid()


def process_exists(pid: int) -> bool:
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        # An exited-but-unreaped child still answers signal 0; it is not running.
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
    except Exception:
        pass
    if is_windows():
        return False
    try:
        os.kill(pid, 0)
        return True
    except PermissionError:
        return True
    except Exception:
        return False


def _run(args: List[str], *, timeout_s: float = 5.0) -> subprocess.CompletedProcess:
    return subprocess.run(
        args,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
        text=True,
        timeout=timeout_s,
        check=False,
    )


def kill_process(pid: int, force: bool = False) -> bool:
    """Signal one process. Returns True when the signal/taskkill was accepted."""
    if not isinstance(pid, int) or pid <= 0:
        return False
    if is_windows():
        args = ["taskkill", "/F", "/PID", str(pid)] if force else ["taskkill", "/PID", str(pid)]
        try:
            return _run(args).returncode == 0
        except Exception as e:
            logger.debug("kill_process(%s) via taskkill failed: %s", pid, e)
            return False
    sig = signal.SIGKILL if force else signal.SIGTERM
    try:
        os.kill(pid, sig)
        return True
    except Exception as e:
        logger.debug("kill_process(%s, %s) failed: %s", pid, sig, e)
        return False


def kill_process_tree(pid: int, force: bool = False) -> bool:
    """Signal a process and its children (process group on POSIX, /T on Windows)."""
    if not isinstance(pid, int) or pid <= 0:
        return False
    if is_windows():
        args = ["taskkill", "/F", "/T", "/PID", str(pid)] if force else ["taskkill", "/T", "/PID", str(pid)]
        try:
            return _run(args).returncode == 0
        except Exception as e:
            logger.debug("kill_process_tree(%s) via taskkill failed: %s", pid, e)
            return False

    sig = signal.SIGKILL if force else signal.SIGTERM
    children: List[psutil.Process] = []
    try:
        children = psutil.Process(pid).children(recursive=True)
    except Exception:
        children = []

    ok = False
    try:
        # Never signal our own group (a supervisor started from this shell shares it).
        if os.getpgid(pid) == pid and pid != os.getpgrp():
            os.killpg(pid, sig)
            ok = True
    except Exception:
        ok = False
    if not ok:
        ok = kill_process(pid, force)

    # Children that left the group (setsid, daemonized workers) still get the signal.
    for child in children:
        try:
            child.send_signal(sig)
        except Exception:
            continue
    return ok


def _parse_lsof_pids(text: str) -> List[int]:
    out: List[int] = []
    for line in str(text or "").splitlines():
        s = line.strip()
        if not s:
            continue
        try:
            pid = int(s)
        except ValueError:
            continue
        if pid > 0 and pid not in out:
            out.append(pid)
    return out


def _parse_netstat_pids(text: str, port: int) -> List[int]:
    out: List[int] = []
    suffix = f":{int(port)}"
    for line in str(text or "").splitlines():
        parts = line.split()
        # Proto  Local Address  Foreign Address  State  PID
        if len(parts) < 5 or not parts[0].upper().startswith("TCP"):
            continue
        if parts[3].upper() != "LISTENING":
            continue
        if not parts[1].endswith(suffix):
            continue
        m = _NETSTAT_PID_RE.search(line)
        if not m:
            continue
        pid = int(m.group(1))
        if pid > 0 and pid not in out:
            out.append(pid)
    return out


def _scan_connections(port: int) -> List[int]:
    out: List[int] = []
    try:
        conns = psutil.net_connections(kind="tcp")
    except Exception as e:
        logger.debug("psutil.net_connections failed: %s", e)
        return out
    for c in conns:
        laddr = getattr(c, "laddr", None)
        if not laddr or getattr(laddr, "port", None) != int(port):
            continue
        if getattr(c, "status", None) != psutil.CONN_LISTEN:
            continue
        if c.pid and c.pid > 0 and c.pid not in out:
            out.append(int(c.pid))
    return out


def find_pids_by_port(port: int) -> List[int]:
    """PIDs listening on TCP `port` (excluding this process).

    Clients merely connected to the port are not listed.
    """
    if not isinstance(port, int) or port <= 0:
        return []
    pids: List[int]
    try:
        if is_windows():
            pids = _parse_netstat_pids(_run(["netstat", "-ano"]).stdout, port)
        else:
            pids = _parse_lsof_pids(_run(["lsof", "-t", "-i", f"tcp:{port}", "-sTCP:LISTEN"]).stdout)
    except FileNotFoundError:
        pids = _scan_connections(port)
    except Exception as e:
        logger.debug("find_pids_by_port(%s) failed: %s", port, e)
        pids = []
    me = current_pid()
    return [p for p in pids if p != me]


def kill_process_by_port(port: int, force: bool = False, *, timeout_s: float = 2.0) -> List[int]:
    """Kill whatever listens on `port`; returns the PIDs that are gone afterwards."""
    signalled = [pid for pid in find_pids_by_port(port) if kill_process(pid, force)]
    if not signalled:
        return []
    survivors = wait_for_exit(signalled, timeout_s=timeout_s)
    return [p for p in signalled if p not in survivors]


def wait_for_exit(pids: Iterable[int], *, timeout_s: float, poll_s: float = 0.05) -> List[int]:
    """Wait until all `pids` are gone or the timeout elapses; returns survivors."""
    remaining = [p for p in pids if process_exists(p)]
    end = time.time() + max(0.0, float(timeout_s))
    while remaining and time.time() < end:
        time.sleep(poll_s)
        remaining = [p for p in remaining if process_exists(p)]
    return remaining


def terminate_pids(pids: Iterable[int], *, timeout_s: float = 5.0) -> List[int]:
    """Graceful tree kill, wait, then forceful kill for survivors.

    Returns the PIDs still alive after both attempts (normally empty).
    """
    alive = [p for p in dict.fromkeys(pids) if process_exists(p)]
    for pid in alive:
        if not kill_process_tree(pid):
            logger.warning("Graceful stop signal rejected for pid=%s", pid)
    survivors = wait_for_exit(alive, timeout_s=timeout_s)
    if survivors:
        logger.warning("Processes %s did not exit within %.1fs; forcing termination", survivors, timeout_s)
        for pid in survivors:
            kill_process_tree(pid, force=True)
        survivors = wait_for_exit(survivors, timeout_s=min(2.0, max(0.25, timeout_s)))
        if survivors:
            logger.error("Failed to terminate processes: %s", survivors)
    return survivors


def _module_available(name: str) -> bool:
    try:
        return importlib.util.find_spec(name) is not None
    except Exception:
        return False


def server_compatibility() -> Dict[str, Dict[str, Any]]:
    """Which server backends can run here, and how well they fit this platform."""
    has_uvicorn = _module_available("uvicorn")
    posix = not is_windows()
    return {
        "coroutine": {
            "available": has_uvicorn,
            "windows_support": False,
            "recommended": posix,
            "note": "Concurrent multi-process workers; graceful recycle and reload need POSIX signals",
        },
        "serial": {
            "available": has_uvicorn,
            "windows_support": False,
            "recommended": False,
            "note": "One request at a time per worker; for applications that are not concurrency-safe",
        },
        "async": {
            "available": has_uvicorn,
            "windows_support": True,
            "recommended": not posix,
            "note": "Single process, no in-place reload; works on every platform",
        },
    }


def recommended_server() -> str:
    return "async" if is_windows() else "coroutine"


def runtime_dir(configured: Optional[str] = None) -> Path:
    raw = str(configured or os.getenv("WARMWORKER_RUNTIME_DIR") or "").strip()
    base = Path(raw).expanduser() if raw else Path(tempfile.gettempdir()) / "warmworker"
    return base.resolve()


def pid_file_path(server_name: str, *, directory: Optional[str] = None) -> Path:
    return runtime_dir(directory) / f"warmworker_{server_name}.pid"


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


class PidFile:
    """On-disk record that a named server is running: one PID per line.

    The port the server bound is kept next to it (`<name>.port`) so a later
    `stop` sweeps that port and not whatever the caller's config says.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    @property
    def port_path(self) -> Path:
        return self._path.with_suffix(".port")

    def write(self, pids: Iterable[int], *, port: Optional[int] = None) -> None:
        values = [int(p) for p in pids if isinstance(p, int) and p > 0]
        if port is not None:
            _atomic_write(self.port_path, f"{int(port)}\n")
        _atomic_write(self._path, "".join(f"{p}\n" for p in values))

    def read_port(self) -> Optional[int]:
        try:
            port = int(self.port_path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None
        return port if 0 < port < 65536 else None

    def append(self, pid: int) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "a", encoding="utf-8") as f:
            f.write(f"{int(pid)}\n")

    def read(self) -> List[int]:
        try:
            raw = self._path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []
        except Exception as e:
            logger.warning("Cannot read PID file %s: %s", self._path, e)
            return []
        out: List[int] = []
        for line in raw.splitlines():
            s = line.strip()
            if not s:
                continue
            try:
                pid = int(s)
            except ValueError:
                continue
            if pid > 0 and pid not in out:
                out.append(pid)
        return out

    def primary_pid(self) -> Optional[int]:
        pids = self.read()
        return pids[0] if pids else None

    def live_pids(self) -> List[int]:
        return [p for p in self.read() if process_exists(p)]

    def is_running(self) -> bool:
        return bool(self.live_pids())

    def remove(self) -> None:
        for path in (self._path, self.port_path):
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    def cleanup_stale(self) -> bool:
        """Delete the file when none of its PIDs is alive. Returns True if it was removed."""
        if not self._path.exists():
            return False
        if self.live_pids():
            return False
        logger.info("Removing stale PID file %s", self._path)
        self.remove()
        return True
