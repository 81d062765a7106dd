from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy import func, select, delete
from sqlalchemy.orm import Session, joinedload

from fundmatch.db.database import SessionLocal
from fundmatch.db.models import MatchingPreference, MatchingResult
from fundmatch.errors import ConfigurationError
from fundmatch.matching.scoring import HIGH, LOW, MEDIUM, ScoreResult

logger = logging.getLogger(__name__)

CONFLICT_KEYS = ["organization_id", "opportunity_id"]

# Feedback columns (is_relevant, feedback_note, feedback_at) and created_at are
# not in the update set; a re-score keeps user feedback.
UPDATE_COLUMNS = (
    "user_id",
    "total_score",
    "similarity_score",
    "category_score",
    "eligibility_score",
    "timeliness_score",
    "amount_score",
    "confidence",
    "match_reasons",
    "degraded",
    "refreshed_at",
)


def _dialect_insert(db: Session):
    name = db.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise ConfigurationError(f"Upsert not supported for dialect {name!r}")
    return insert


def _row_values(user_id: int, organization_id: int, score: ScoreResult, now: datetime) -> Dict[str, Any]:
    sub = score.sub_scores
    return {
        "user_id": user_id,
        "organization_id": organization_id,
        "opportunity_id": score.opportunity_id,
        "total_score": score.total_score,
        "similarity_score": sub.similarity,
        "category_score": sub.category,
        "eligibility_score": sub.eligibility,
        "timeliness_score": sub.timeliness,
        "amount_score": sub.amount,
        "confidence": score.confidence,
        "match_reasons": list(score.match_reasons),
        "degraded": score.degraded,
        "created_at": now,
        "refreshed_at": now,
    }


def upsert_result(db: Session, user_id: int, organization_id: int, score: ScoreResult,
                  now: Optional[datetime] = None) -> None:
    """Single INSERT .. ON CONFLICT DO UPDATE keyed by (organization, opportunity)."""
    now = now or datetime.now(timezone.utc)
    insert = _dialect_insert(db)
    stmt = insert(MatchingResult).values(**_row_values(user_id, organization_id, score, now))
    stmt = stmt.on_conflict_do_update(
        index_elements=CONFLICT_KEYS,
        set_={col: getattr(stmt.excluded, col) for col in UPDATE_COLUMNS},
    )
    db.execute(stmt)


class ResultStore:
    """Single writer of MatchingResult rows; one transaction per row."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def upsert(self, user_id: int, organization_id: int, score: ScoreResult,
               now: Optional[datetime] = None) -> None:
        with self.session_factory() as db, db.begin():
            upsert_result(db, user_id, organization_id, score, now=now)

    def remove_unlisted(self, organization_id: int, keep_opportunity_ids: Iterable[int]) -> int:
        """Delete the organization's rows for opportunities outside ``keep_opportunity_ids``."""
        keep = list(keep_opportunity_ids)
        stmt = delete(MatchingResult).where(MatchingResult.organization_id == organization_id)
        if keep:
            stmt = stmt.where(MatchingResult.opportunity_id.not_in(keep))
        with self.session_factory() as db, db.begin():
            deleted = db.execute(stmt).rowcount
        if deleted:
            logger.info("remove_unlisted: org=%s deleted=%d", organization_id, deleted)
        return deleted

    def prune_stale(self, retention_days: int = 30, now: Optional[datetime] = None) -> int:
        """Delete rows not refreshed within the retention window. Maintenance only."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
        with self.session_factory() as db, db.begin():
            deleted = db.execute(
                delete(MatchingResult).where(MatchingResult.refreshed_at < cutoff)
            ).rowcount
        logger.info("prune_stale: deleted=%d (not refreshed for %d days)", deleted, retention_days)
        return deleted


# ---------- Read / feedback ----------

def get_result(db: Session, result_id: int, user_id: int) -> Optional[MatchingResult]:
    stmt = (select(MatchingResult)
            .options(joinedload(MatchingResult.opportunity), joinedload(MatchingResult.organization))
            .where(MatchingResult.id == result_id)
            .where(MatchingResult.user_id == user_id))
    return db.execute(stmt).scalar_one_or_none()


def list_results(
    db: Session,
    user_id: int,
    organization_id: Optional[int] = None,
    confidence: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[MatchingResult], int]:
    stmt = select(MatchingResult).where(MatchingResult.user_id == user_id)
    if organization_id is not None:
        stmt = stmt.where(MatchingResult.organization_id == organization_id)
    if confidence:
        stmt = stmt.where(MatchingResult.confidence == confidence)

    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0

    stmt_paged = (stmt.options(joinedload(MatchingResult.opportunity), joinedload(MatchingResult.organization))
                  .order_by(MatchingResult.total_score.desc(), MatchingResult.id.asc())
                  .offset((page - 1) * page_size)
                  .limit(page_size))
    return list(db.execute(stmt_paged).scalars().unique().all()), total


def submit_feedback(db: Session, result_id: int, user_id: int, is_relevant: bool,
                    note: Optional[str] = None) -> Optional[MatchingResult]:
    row = db.execute(
        select(MatchingResult)
        .where(MatchingResult.id == result_id)
        .where(MatchingResult.user_id == user_id)
        .with_for_update()
    ).scalar_one_or_none()
    if row is None:
        return None
    try:
        row.is_relevant = bool(is_relevant)
        row.feedback_note = note
        row.feedback_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(row)
        return row
    except Exception:
        db.rollback()
        raise


def results_stats(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or datetime.now(timezone.utc)
    by_conf = dict(db.execute(
        select(MatchingResult.confidence, func.count()).group_by(MatchingResult.confidence)
    ).all())
    return {
        "organizationsWithPreferences": db.scalar(
            select(func.count(func.distinct(MatchingPreference.organization_id)))
        ) or 0,
        "totalResults": sum(by_conf.values()),
        "high": by_conf.get(HIGH, 0),
        "medium": by_conf.get(MEDIUM, 0),
        "low": by_conf.get(LOW, 0),
        "refreshedLast24h": db.scalar(
            select(func.count()).select_from(MatchingResult)
            .where(MatchingResult.refreshed_at >= now - timedelta(hours=24))
        ) or 0,
    }
