import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fundmatch.api.auth import Trigger, verify_trigger
from fundmatch.api.deps import get_db
from fundmatch.config import get_pipeline_config
from fundmatch.matching.orchestrator import Orchestrator
from fundmatch.matching.result_store import ResultStore
from fundmatch.matching.runner import default_runner, stored_count
from fundmatch.notifications.channels import default_channels
from fundmatch.notifications.digest import run_daily_digest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


def get_orchestrator() -> Orchestrator:
    return Orchestrator(process=stored_count(default_runner()))


def get_digest_channels() -> list:
    return default_channels()


def get_result_store() -> ResultStore:
    return ResultStore()


def _wants_direct(body: bytes) -> bool:
    if not body:
        return False
    try:
        data = json.loads(body)
    except ValueError:
        return False
    return isinstance(data, dict) and data.get("direct") is True


@router.api_route("/matching-refresh", methods=["GET", "POST"])
def matching_refresh(
    trigger: Trigger = Depends(verify_trigger),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    summary = orchestrator.refresh(trigger.source, force_direct=_wants_direct(trigger.body))
    return {"success": True, "data": summary.to_dict()}


@router.api_route("/daily-digest", methods=["GET", "POST"])
def daily_digest(
    trigger: Trigger = Depends(verify_trigger),
    channels: list = Depends(get_digest_channels),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    logger.info("Daily digest started via %s", trigger.source)
    summary = run_daily_digest(db, channels)
    return {"success": True, "triggeredBy": trigger.source, "data": summary.to_dict()}


@router.post("/prune-results")
def prune_results(
    trigger: Trigger = Depends(verify_trigger),
    store: ResultStore = Depends(get_result_store),
) -> Dict[str, Any]:
    days = get_pipeline_config().retention_days
    deleted = store.prune_stale(retention_days=days)
    return {"success": True, "triggeredBy": trigger.source, "data": {"deleted": deleted, "retentionDays": days}}
