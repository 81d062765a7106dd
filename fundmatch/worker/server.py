"""
Worker Executor: a long-running process that takes large matching batches
off the request-serving app.

``POST /matching/batch`` validates and authenticates synchronously, answers
202 and leaves the work to ``BatchDispatcher``'s background thread.
"""
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, Optional
import logging
import time
import uuid

from fastapi import Depends, FastAPI, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from fundmatch.api.deps import get_db, require_worker_key
from fundmatch.api.schemas import EmbeddingBatchPayload, WorkerBatchPayload
from fundmatch.config import get_pipeline_config, get_settings
from fundmatch.logging_config import setup_logging
from fundmatch.matching.orchestrator import eligible_organization_ids
from fundmatch.matching.result_store import results_stats
from fundmatch.matching.runner import default_runner, stored_count
from fundmatch.matching.similarity import (
    embedding_stats, generate_document_embeddings, generate_embeddings, rebuild_opportunity_index,
)
from fundmatch.worker.batch import BatchDispatcher, run_matching_batch
from fundmatch.worker.throttle import MemoryMonitor, ResourceThrottle

setup_logging("worker")
logger = logging.getLogger(__name__)

SERVICE_NAME = "fundmatch-worker"
STARTED_AT = time.monotonic()

app = FastAPI(title="FundMatch Worker", version="1.0.0")


@lru_cache(maxsize=1)
def get_dispatcher() -> BatchDispatcher:
    return BatchDispatcher()


@lru_cache(maxsize=1)
def get_monitor() -> MemoryMonitor:
    s = get_settings()
    return MemoryMonitor(s.worker_memory_warning_mb, s.worker_memory_critical_mb)


def get_batch_process() -> Callable[[int], int]:
    return stored_count(default_runner())


def get_throttle_factory() -> Callable[[int], ResourceThrottle]:
    cfg = get_pipeline_config()

    def make(chunk_size: int) -> ResourceThrottle:
        return ResourceThrottle(chunk_size=chunk_size, pause_seconds=cfg.worker_pause_s,
                                reclaim_memory=cfg.worker_reclaim_memory)
    return make


def get_embed_fn() -> Optional[Callable]:
    return None


@app.on_event("shutdown")
def _shutdown():
    get_dispatcher().shutdown(wait=False)


@app.get("/health")
def health(monitor: MemoryMonitor = Depends(get_monitor)) -> Dict[str, Any]:
    memory = monitor.snapshot()
    return {
        "status": monitor.status(memory["rss_mb"]),
        "service": SERVICE_NAME,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - STARTED_AT, 1),
        "memory": memory,
    }


@app.post("/generate-embeddings", dependencies=[Depends(require_worker_key)])
def generate(
    payload: EmbeddingBatchPayload = EmbeddingBatchPayload(),
    db: Session = Depends(get_db),
    embed_fn: Optional[Callable] = Depends(get_embed_fn),
) -> Dict[str, Any]:
    summary = generate_embeddings(db, batch_size=payload.batch_size, embed_fn=embed_fn)
    indexed = rebuild_opportunity_index(db) if summary.success_count else None
    documents = generate_document_embeddings(db, batch_size=payload.batch_size, embed_fn=embed_fn)
    return {
        "success": True,
        "processed": summary.processed,
        "successCount": summary.success_count,
        "errorCount": summary.error_count,
        "errors": summary.errors[:20],
        "indexed": indexed,
        "documentsEmbedded": documents.success_count,
    }


@app.post("/matching/batch", dependencies=[Depends(require_worker_key)])
def matching_batch(
    payload: WorkerBatchPayload = WorkerBatchPayload(),
    db: Session = Depends(get_db),
    dispatcher: BatchDispatcher = Depends(get_dispatcher),
    process: Callable[[int], int] = Depends(get_batch_process),
    make_throttle: Callable[[int], ResourceThrottle] = Depends(get_throttle_factory),
    monitor: MemoryMonitor = Depends(get_monitor),
):
    org_ids = eligible_organization_ids(db, limit=payload.max_organizations)
    if not org_ids:
        return {"accepted": False, "organizations": 0, "message": "No eligible organizations"}

    job_id = uuid.uuid4().hex[:12]
    throttle = make_throttle(payload.batch_size)
    dispatcher.submit(job_id, lambda: run_matching_batch(org_ids, process, throttle, monitor, job_id=job_id))
    logger.info("Accepted matching batch %s: %d organization(s), chunk size %d",
                job_id, len(org_ids), payload.batch_size)

    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={
            "accepted": True,
            "jobId": job_id,
            "organizations": len(org_ids),
            "chunkSize": payload.batch_size,
            "chunks": -(-len(org_ids) // payload.batch_size),
        },
    )


@app.get("/matching/stats", dependencies=[Depends(require_worker_key)])
def matching_stats(
    db: Session = Depends(get_db),
    dispatcher: BatchDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    last = dispatcher.last_summary
    return {
        "results": results_stats(db),
        "embeddings": embedding_stats(db),
        "pendingBatches": dispatcher.pending,
        "lastBatch": last.to_dict() if last else None,
        "lastError": dispatcher.last_error,
    }
