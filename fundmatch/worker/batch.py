from __future__ import annotations
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging
import threading
import uuid

from fundmatch.worker.throttle import MemoryMonitor, ResourceThrottle, STATUS_OK

logger = logging.getLogger(__name__)


@dataclass
class BatchSummary:
    job_id: str
    total: int = 0
    chunks: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    results_stored: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    finished_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def chunked(items: Sequence[int], size: int) -> List[List[int]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def run_matching_batch(
    org_ids: Sequence[int],
    process: Callable[[int], int],
    throttle: ResourceThrottle,
    monitor: Optional[MemoryMonitor] = None,
    job_id: Optional[str] = None,
) -> BatchSummary:
    """
    Run ``process`` for every organization, ``throttle.chunk_size`` at a time.

    One organization's exception is logged and counted; the batch carries on.
    Between chunks (not after the last one) the throttle pauses and reclaims
    memory so that transient per-organization objects do not pile up.
    """
    summary = BatchSummary(job_id=job_id or uuid.uuid4().hex, total=len(org_ids))
    chunks = chunked(org_ids, throttle.chunk_size)

    for n, chunk in enumerate(chunks, start=1):
        before = monitor.rss_mb() if monitor else None
        logger.info("[%s] chunk %d/%d (%d orgs) rss_before=%sMB",
                    summary.job_id, n, len(chunks), len(chunk), before)

        for org_id in chunk:
            summary.processed += 1
            try:
                summary.results_stored += process(org_id)
                summary.succeeded += 1
            except Exception as e:
                summary.failed += 1
                summary.errors.append(f"org={org_id}: {e}")
                logger.error("[%s] matching failed for org=%s: %s", summary.job_id, org_id, e, exc_info=True)
        summary.chunks += 1

        if monitor:
            after = monitor.rss_mb()
            status = monitor.status(after)
            log = logger.info if status == STATUS_OK else logger.warning
            log("[%s] chunk %d/%d done rss_after=%sMB status=%s", summary.job_id, n, len(chunks), after, status)

        if n < len(chunks):
            throttle.after_chunk()

    summary.finished_at = datetime.now(timezone.utc).isoformat()
    logger.info("[%s] batch complete: processed=%d succeeded=%d failed=%d stored=%d",
                summary.job_id, summary.processed, summary.succeeded, summary.failed, summary.results_stored)
    return summary


class BatchDispatcher:
    """Runs accepted batches one after another on a single background thread."""

    def __init__(self):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="matching-batch")
        self._lock = threading.Lock()
        self._pending = 0
        self.last_summary: Optional[BatchSummary] = None
        self.last_error: Optional[str] = None
        self.last_future: Optional[Future] = None

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def submit(self, job_id: str, fn: Callable[[], BatchSummary]) -> Future:
        with self._lock:
            self._pending += 1
        future = self._executor.submit(fn)
        future.add_done_callback(lambda f: self._on_done(job_id, f))
        self.last_future = future
        return future

    def _on_done(self, job_id: str, future: Future) -> None:
        with self._lock:
            self._pending -= 1
        exc = future.exception()
        if exc is not None:
            self.last_error = f"{job_id}: {exc}"
            logger.error("Background batch %s crashed: %s", job_id, exc,
                         exc_info=(type(exc), exc, exc.__traceback__))
            return
        self.last_summary = future.result()
        logger.info("Background batch %s finished", job_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
