from __future__ import annotations
from typing import Callable, Dict
import gc
import logging
import time

import psutil

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_DEGRADED = "degraded"
STATUS_CRITICAL = "critical"


class ResourceThrottle:
    """Inter-chunk pause with an optional explicit collection pass."""

    def __init__(self, chunk_size: int = 10, pause_seconds: float = 5,
                 reclaim_memory: bool = True, sleep: Callable[[float], None] = time.sleep):
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.chunk_size = chunk_size
        self.pause_seconds = pause_seconds
        self.reclaim_memory = reclaim_memory
        self.sleep = sleep

    def after_chunk(self) -> None:
        if self.reclaim_memory:
            freed = gc.collect()
            logger.debug("gc.collect() reclaimed %d objects", freed)
        if self.pause_seconds > 0:
            self.sleep(self.pause_seconds)


class MemoryMonitor:
    def __init__(self, warning_mb: int = 400, critical_mb: int = 480):
        self.warning_mb = warning_mb
        self.critical_mb = critical_mb
        self._process = psutil.Process()

    def rss_mb(self) -> float:
        return round(self._process.memory_info().rss / (1024 * 1024), 1)

    def status(self, rss_mb: float | None = None) -> str:
        rss = self.rss_mb() if rss_mb is None else rss_mb
        if rss >= self.critical_mb:
            return STATUS_CRITICAL
        if rss >= self.warning_mb:
            return STATUS_DEGRADED
        return STATUS_OK

    def snapshot(self) -> Dict[str, float]:
        return {
            "rss_mb": self.rss_mb(),
            "warning_mb": self.warning_mb,
            "critical_mb": self.critical_mb,
        }
