"""Process memory readings shared by the hygiene manager, the leak detector and `status`."""

from __future__ import annotations

import os
import sys
from typing import Any, Dict, Optional, Tuple

import psutil


UNLIMITED = -1

_UNITS = ("B", "KB", "MB", "GB", "TB")


def _process(pid: Optional[int] = None) -> psutil.Process:
    return psutil.Process(pid if pid is not None else os.getpid())


def resident_bytes(pid: Optional[int] = None) -> int:
    """Current resident set size of `pid` (default: this process)."""
    return int(_process(pid).memory_info().rss)


def peak_resident_bytes(pid: Optional[int] = None) -> int:
    """Best-effort peak resident size; falls back to the current RSS."""
    current = resident_bytes(pid)
    if pid is None or pid == os.getpid():
        if sys.platform == "win32":
            peak = getattr(_process().memory_info(), "peak_wset", None)
            if isinstance(peak, int):
                return max(current, peak)
            return current
        try:
            import resource

            maxrss = int(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss)
        except Exception:
            return current
        # Linux reports KiB, macOS reports bytes.
        peak = maxrss if sys.platform == "darwin" else maxrss * 1024
        return max(current, peak)
    return current


def sample() -> Tuple[int, int]:
    return resident_bytes(), peak_resident_bytes()


def parse_memory_limit(value: Any) -> int:
    """Parse "128M" / "1G" / "512K" / "1048576" / "-1" into bytes (UNLIMITED for -1)."""
    if value is None:
        return UNLIMITED
    if isinstance(value, int):
        return UNLIMITED if value < 0 else value
    s = str(value).strip().lower()
    if not s or s == "-1":
        return UNLIMITED
    unit = s[-1]
    number = s[:-1] if unit in {"k", "m", "g"} else s
    try:
        amount = int(float(number))
    except Exception:
        raise ValueError(f"Invalid memory limit: {value!r}")
    if amount < 0:
        return UNLIMITED
    multiplier = {"k": 1024, "m": 1024**2, "g": 1024**3}.get(unit, 1)
    return amount * multiplier


def process_memory_ceiling(configured: Optional[str] = None) -> int:
    """Configured limit when set, else the address-space rlimit (POSIX), else UNLIMITED."""
    if configured is not None and str(configured).strip():
        return parse_memory_limit(configured)
    if sys.platform == "win32":
        return UNLIMITED
    try:
        import resource

        soft, _hard = resource.getrlimit(resource.RLIMIT_AS)
    except Exception:
        return UNLIMITED
    if soft == resource.RLIM_INFINITY or soft <= 0:
        return UNLIMITED
    return int(soft)


def format_bytes(num: float, precision: int = 2) -> str:
    """Human-readable size; negative values (shrinking memory) keep their sign."""
    raw = float(num or 0)
    sign = "-" if raw < 0 else ""
    value = abs(raw)
    power = 0
    while value >= 1024 and power < len(_UNITS) - 1:
        value /= 1024.0
        power += 1
    return f"{sign}{round(value, precision):g} {_UNITS[power]}"


def format_limit(limit: int) -> str:
    return "-1" if limit == UNLIMITED else format_bytes(limit)


def memory_usage(*, configured_limit: Optional[str] = None, pid: Optional[int] = None) -> Dict[str, Any]:
    usage = resident_bytes(pid)
    peak = peak_resident_bytes(pid)
    limit = process_memory_ceiling(configured_limit)
    return {
        "memory_usage": usage,
        "memory_peak_usage": peak,
        "memory_limit": format_limit(limit),
        "memory_limit_bytes": limit,
        "memory_usage_formatted": format_bytes(usage),
        "memory_peak_usage_formatted": format_bytes(peak),
    }
