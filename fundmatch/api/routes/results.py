import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from fundmatch.api.deps import Role, get_current_user_id, get_db, require_org_role
from fundmatch.api.schemas import (
    FeedbackPayload, OpportunitySummary, ResultList, ResultOut, RunPayload,
)
from fundmatch.db.models import MatchingResult
from fundmatch.errors import OrganizationNotEligible
from fundmatch.matching.result_store import get_result, list_results, submit_feedback
from fundmatch.matching.runner import MatchingRunner, default_runner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/matching", tags=["matching"])


def get_runner() -> MatchingRunner:
    return default_runner()


def _to_out(r: MatchingResult) -> ResultOut:
    o = r.opportunity
    return ResultOut(
        id=r.id,
        organization_id=r.organization_id,
        opportunity_id=r.opportunity_id,
        total_score=r.total_score,
        similarity_score=r.similarity_score,
        category_score=r.category_score,
        eligibility_score=r.eligibility_score,
        timeliness_score=r.timeliness_score,
        amount_score=r.amount_score,
        confidence=r.confidence,
        match_reasons=list(r.match_reasons or []),
        degraded=bool(r.degraded),
        is_relevant=r.is_relevant,
        feedback_note=r.feedback_note,
        refreshed_at=r.refreshed_at,
        opportunity=OpportunitySummary(
            id=o.id,
            name=o.name,
            organization=o.organization or "",
            category=o.category or "",
            region=o.region,
            deadline=o.deadline,
            is_permanent=bool(o.is_permanent),
            amount_min=o.amount_min,
            amount_max=o.amount_max,
        ) if o else None,
    )


@router.get("/results", response_model=ResultList)
def read_results(
    organization_id: Optional[int] = Query(None, alias="organizationId"),
    confidence: Optional[str] = Query(None, pattern="^(high|medium|low)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    if organization_id is not None:
        require_org_role(db, user_id, organization_id, Role.viewer)
    rows, total = list_results(db, user_id, organization_id, confidence, page, page_size)
    return ResultList(
        items=[_to_out(r) for r in rows],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total else 0,
    )


@router.get("/results/{result_id}", response_model=ResultOut)
def read_result(result_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_current_user_id)):
    row = get_result(db, result_id, user_id)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Result not found")
    return _to_out(row)


@router.post("/results/{result_id}/feedback", response_model=ResultOut)
def post_feedback(
    result_id: int,
    payload: FeedbackPayload,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    row = submit_feedback(db, result_id, user_id, payload.is_relevant, payload.feedback_note)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Result not found")
    return _to_out(get_result(db, result_id, user_id))


@router.post("/run")
def run_matching(
    payload: RunPayload,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    runner: MatchingRunner = Depends(get_runner),
):
    """Match one organization now, for the calling member."""
    require_org_role(db, user_id, payload.organization_id, Role.member)
    try:
        outcome = runner.run_for_organization(payload.organization_id, user_id=user_id)
    except OrganizationNotEligible as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {
        "success": True,
        "data": {
            "organizationId": outcome.organization_id,
            "candidates": outcome.candidates,
            "scored": outcome.scored,
            "stored": outcome.stored,
            "removed": outcome.removed,
            "skipped": outcome.skipped,
            "degraded": outcome.degraded,
        },
    }
