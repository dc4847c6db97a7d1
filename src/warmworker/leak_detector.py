"""Sliding-window memory growth heuristic.

A sample of resident memory is taken every `check_interval` requests and kept
in a bounded history. The verdict looks only at the three most recent samples:
growth above `growth_threshold` between the first and the last of them is
reported as a suspected leak. This is a coarse growth signal, not a leak
diagnosis; caches that legitimately warm up will trip it.
"""

from __future__ import annotations

import gc
import importlib
import logging
import sys
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .memory import format_bytes, sample as _default_sampler


logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 10
DEFAULT_HISTORY_SIZE = 20
DEFAULT_GROWTH_THRESHOLD = 1024 * 1024
RESTART_SUGGESTION_PER_REQUEST = 100 * 1024
VERDICT_WINDOW = 3

Sampler = Callable[[], Tuple[int, int]]


@dataclass(frozen=True)
class MemorySample:
    request_index: int
    resident_bytes: int
    peak_bytes: int
    sampled_at: float


@dataclass(frozen=True)
class LeakVerdict:
    enough_data: bool
    detected: bool = False
    growth_bytes: int = 0
    growth_per_request: float = 0.0
    span_requests: int = 0
    span_time: float = 0.0
    current_bytes: int = 0
    message: str = "Not enough data"

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["growth_formatted"] = format_bytes(self.growth_bytes)
        out["current_formatted"] = format_bytes(self.current_bytes)
        return out


class LeakDetector:
    def __init__(
        self,
        *,
        check_interval: int = DEFAULT_CHECK_INTERVAL,
        history_size: int = DEFAULT_HISTORY_SIZE,
        growth_threshold: int = DEFAULT_GROWTH_THRESHOLD,
        sampler: Optional[Sampler] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._check_interval = max(1, int(check_interval))
        self._growth_threshold = max(0, int(growth_threshold))
        self._sampler: Sampler = sampler or _default_sampler
        self._clock = clock
        self._history: Deque[MemorySample] = deque(maxlen=max(VERDICT_WINDOW, int(history_size)))
        self._request_count = 0

    @property
    def request_count(self) -> int:
        return self._request_count

    @property
    def growth_threshold(self) -> int:
        return self._growth_threshold

    @property
    def history(self) -> List[MemorySample]:
        return list(self._history)

    def record_request_start(self) -> Optional[MemorySample]:
        """Count one request; every `check_interval` requests record a sample."""
        self._request_count += 1
        if self._request_count % self._check_interval != 0:
            return None
        resident, peak = self._sampler()
        sample = MemorySample(
            request_index=self._request_count,
            resident_bytes=int(resident),
            peak_bytes=int(peak),
            sampled_at=float(self._clock()),
        )
        self._history.append(sample)
        return sample

    def detect_leak(self) -> LeakVerdict:
        if len(self._history) < VERDICT_WINDOW:
            return LeakVerdict(enough_data=False)

        recent = list(self._history)[-VERDICT_WINDOW:]
        first, last = recent[0], recent[-1]
        growth = last.resident_bytes - first.resident_bytes
        span_requests = last.request_index - first.request_index
        span_time = last.sampled_at - first.sampled_at
        per_request = growth / span_requests if span_requests > 0 else 0.0
        detected = growth > self._growth_threshold

        if detected:
            message = f"Memory leak detected: {format_bytes(growth)} growth over {span_requests} requests"
        else:
            message = "No significant memory leak detected"

        return LeakVerdict(
            enough_data=True,
            detected=detected,
            growth_bytes=growth,
            growth_per_request=per_request,
            span_requests=span_requests,
            span_time=span_time,
            current_bytes=last.resident_bytes,
            message=message,
        )

    def get_memory_stats(self) -> Dict[str, Any]:
        """Whole-history view; coarser companion to the 3-sample verdict."""
        if not self._history:
            return {}
        oldest = self._history[0]
        latest = self._history[-1]
        total_growth = latest.resident_bytes - oldest.resident_bytes
        span = max(1, latest.request_index - oldest.request_index)
        return {
            "total_requests": self._request_count,
            "tracked_requests": len(self._history),
            "current_memory": latest.resident_bytes,
            "current_memory_formatted": format_bytes(latest.resident_bytes),
            "peak_memory": max(s.peak_bytes for s in self._history),
            "total_growth": total_growth,
            "total_growth_formatted": format_bytes(total_growth),
            "average_per_request": total_growth / span,
            "history": [asdict(s) for s in self._history],
        }

    def get_cleanup_suggestions(self) -> List[str]:
        verdict = self.detect_leak()
        if not verdict.detected:
            return []
        suggestions = [
            "Force garbage collection",
            "Clear application cache",
            "Reset static variables",
        ]
        if verdict.growth_per_request > RESTART_SUGGESTION_PER_REQUEST:
            suggestions.append("Consider restarting worker process")
        return suggestions

    def perform_cleanup(self) -> List[str]:
        """Run the cleanup steps that are always safe; return what was actually done."""
        performed: List[str] = []

        collected = gc.collect()
        performed.append(f"Garbage collection: {collected} objects collected")

        flushed = 0
        for stream in (sys.stdout, sys.stderr):
            flush = getattr(stream, "flush", None)
            if not callable(flush):
                continue
            try:
                flush()
                flushed += 1
            except Exception as e:
                logger.debug("LeakDetector: cannot flush %r: %s", stream, e)
        if flushed:
            performed.append(f"Flushed {flushed} output buffers")

        try:
            importlib.invalidate_caches()
            performed.append("Invalidated import caches")
        except Exception as e:
            logger.debug("LeakDetector: import cache invalidation failed: %s", e)

        clear_type_cache = getattr(sys, "_clear_type_cache", None)
        if callable(clear_type_cache):
            clear_type_cache()
            performed.append("Cleared type attribute cache")

        return performed

    def reset(self) -> None:
        self._history.clear()
        self._request_count = 0
