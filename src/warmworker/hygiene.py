from __future__ import annotations

import gc
import importlib
import linecache
import logging
import random
import re
import sys
from typing import Any, Callable, Dict, Optional

from .config import GcConfig, WorkerConfig
from .debug import is_debug_mode, should_preserve_output
from .leak_detector import LeakDetector
from .memory import UNLIMITED, memory_usage, process_memory_ceiling, resident_bytes
from .state import ProcessStateScope, StateScope


logger = logging.getLogger(__name__)


class MemoryHygieneManager:
    """Per-request memory cleanup: request globals, GC policy, interpreter caches, leak checks."""

    def __init__(
        self,
        config: Optional[WorkerConfig] = None,
        *,
        scope: Optional[StateScope] = None,
        app: Any = None,
        leak_detector: Optional[LeakDetector] = None,
        rng: Optional[Callable[[int, int], int]] = None,
        usage_reader: Optional[Callable[[], int]] = None,
    ) -> None:
        self._cfg = config or WorkerConfig()
        self._gc: GcConfig = self._cfg.gc
        self._scope = scope or ProcessStateScope()
        self._app = app
        self._leak_detector = leak_detector or LeakDetector(growth_threshold=self._cfg.leak_threshold)
        self._rng = rng or random.randint
        self._usage_reader = usage_reader or resident_bytes
        self._request_count = 0
        self._forced_collections = 0

    @property
    def leak_detector(self) -> LeakDetector:
        return self._leak_detector

    @property
    def request_count(self) -> int:
        return self._request_count

    @property
    def forced_collections(self) -> int:
        return self._forced_collections

    def reset_request_count(self) -> None:
        self._request_count = 0

    def flush(self) -> None:
        """Run after every request, whether dispatch succeeded or not."""
        self._leak_detector.record_request_start()
        self._request_count += 1

        self.clear_request_globals()
        collected = self.garbage_collection()
        self.clear_interpreter_state(purge_caches=collected > 0)
        self.check_and_cleanup_leak()

    def clear_request_globals(self) -> None:
        try:
            self._scope.current().clear_request_data()
        except Exception as e:
            logger.warning("MemoryHygieneManager: failed clearing request state: %s", e)

    def garbage_collection(self) -> int:
        """Apply the GC policy; returns how many collections it triggered (0-2)."""
        if not self._gc.enabled:
            return 0
        triggered = 0
        if self._rng(1, 100) <= self._gc.probability:
            self.force_garbage_collection()
            triggered += 1
        if self._request_count % max(1, self._gc.cycles) == 0:
            self.force_garbage_collection()
            triggered += 1
        return triggered

    def clear_interpreter_state(self, *, purge_caches: bool = True) -> bool:
        """Drop interpreter caches and drain output. Returns True when caches were purged.

        `flush()` only purges on requests where the GC policy fired, so the
        cost follows the configured probability and cycle length.
        """
        purged = False
        # Tracers attached in debug mode read these caches.
        if purge_caches and not is_debug_mode(self._cfg, self._app):
            try:
                importlib.invalidate_caches()
                linecache.clearcache()
                re.purge()
                purged = True
            except Exception as e:
                logger.debug("MemoryHygieneManager: interpreter cache clear failed: %s", e)

        if not should_preserve_output(self._cfg, self._app):
            for stream in (sys.stdout, sys.stderr):
                try:
                    stream.flush()
                except Exception:
                    continue
        return purged

    def check_and_cleanup_leak(self) -> None:
        try:
            verdict = self._leak_detector.detect_leak()
            if not verdict.detected:
                return
            actions = self._leak_detector.perform_cleanup()
            logger.warning("warmworker: %s (cleanup: %s)", verdict.message, "; ".join(actions))
        except Exception as e:
            logger.warning("MemoryHygieneManager: leak check failed: %s", e)

    def force_garbage_collection(self) -> int:
        self._forced_collections += 1
        return gc.collect()

    def gc_stats(self) -> Dict[str, Any]:
        counts = gc.get_count()
        thresholds = gc.get_threshold()
        stats = gc.get_stats()
        return {
            "enabled": gc.isenabled(),
            "counts": list(counts),
            "thresholds": list(thresholds),
            "collections": sum(int(s.get("collections", 0)) for s in stats),
            "collected": sum(int(s.get("collected", 0)) for s in stats),
            "uncollectable": sum(int(s.get("uncollectable", 0)) for s in stats),
            "forced": self._forced_collections,
        }

    def memory_usage(self) -> Dict[str, Any]:
        return memory_usage(configured_limit=self._cfg.memory_limit)

    def is_memory_limit_exceeded(self, threshold: Optional[float] = None) -> bool:
        limit = process_memory_ceiling(self._cfg.memory_limit)
        if limit == UNLIMITED or limit <= 0:
            return False
        ratio = float(self._cfg.memory_threshold if threshold is None else threshold)
        return self._usage_reader() / limit > ratio
