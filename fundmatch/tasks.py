from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict
import logging
import signal
import sys

from redis import Redis

from fundmatch.config import get_pipeline_config, get_settings
from fundmatch.db.database import SessionLocal
from fundmatch.matching.orchestrator import Orchestrator
from fundmatch.matching.result_store import ResultStore
from fundmatch.matching.runner import default_runner, stored_count
from fundmatch.matching.similarity import (
    generate_document_embeddings, generate_embeddings, rebuild_opportunity_index,
)
from fundmatch.notifications.channels import default_channels
from fundmatch.notifications.digest import run_daily_digest

logger = logging.getLogger(__name__)

SOURCE_SCHEDULER = "scheduler"

REFRESH_LOCK_KEY = "matching_refresh_lock"
REFRESH_LOCK_TTL_SECONDS = 6 * 60 * 60
_current_lock = None


def _graceful_lock_release(signum, frame):
    global _current_lock
    if _current_lock is not None:
        try:
            _current_lock.release()
            logger.warning("matching_refresh_job: released lock on signal %s", signum)
        except Exception as e:
            logger.error("matching_refresh_job: lock release failed on signal %s: %s", signum, e)
    sys.exit(1)


# ---------- Matching refresh ----------
def matching_refresh_job() -> Dict[str, Any]:
    """
    Scheduled matching refresh. A non-blocking Redis lock keeps two scheduled
    runs from overlapping; manual triggers through the API are not locked.
    """
    global _current_lock
    logger.info("matching_refresh_job: TRIGGERED at %s", datetime.now(timezone.utc).isoformat())
    r = Redis.from_url(get_settings().redis_url)

    lock = r.lock(REFRESH_LOCK_KEY, timeout=REFRESH_LOCK_TTL_SECONDS)
    if not lock.acquire(blocking=False):
        logger.info("matching_refresh_job: another run is in progress; skipping.")
        return {"skipped": True, "reason": "already_running"}

    _current_lock = lock
    signal.signal(signal.SIGTERM, _graceful_lock_release)
    signal.signal(signal.SIGINT, _graceful_lock_release)
    try:
        summary = Orchestrator(process=stored_count(default_runner())).refresh(SOURCE_SCHEDULER)
        logger.info("matching_refresh_job summary: %s", summary.to_dict())
        return summary.to_dict()
    finally:
        try:
            lock.release()
        except Exception as e:
            logger.warning("matching_refresh_job: lock release failed: %s", e)
        finally:
            _current_lock = None


# ---------- Daily digest ----------
def daily_digest_job() -> Dict[str, Any]:
    with SessionLocal() as db:
        summary = run_daily_digest(db, default_channels())
    return summary.to_dict()


# ---------- Embeddings ----------
def embeddings_job(batch_size: int = 50) -> Dict[str, Any]:
    """Embed pending opportunities and documents, then rebuild the FAISS index when opportunities changed."""
    with SessionLocal() as db:
        summary = generate_embeddings(db, batch_size=batch_size)
        indexed = rebuild_opportunity_index(db) if summary.success_count else None
        documents = generate_document_embeddings(db, batch_size=batch_size)
    out = {
        "processed": summary.processed,
        "success": summary.success_count,
        "errors": summary.error_count,
        "indexed": indexed,
        "documents": documents.success_count,
    }
    logger.info("embeddings_job: %s", out)
    return out


# ---------- Prune ----------
def prune_results_job() -> int:
    return ResultStore().prune_stale(retention_days=get_pipeline_config().retention_days)
