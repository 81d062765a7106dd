"""
Cron-invoked matching refresh.

The orchestrator counts eligible organizations, picks an execution strategy
with ``choose_strategy`` and hands the work to either a ``DirectExecutor``
(sequential, bounded by count and wall-clock budget) or a
``DelegatedExecutor`` (one request to the worker process, falling back to
the direct path when the worker cannot be reached).
"""
from __future__ import annotations
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging
import time

import requests
from sqlalchemy import exists, func, select
from sqlalchemy.orm import Session

from fundmatch.config import PipelineConfig, Settings, get_pipeline_config, get_settings
from fundmatch.db.database import SessionLocal
from fundmatch.db.models import MatchingPreference, Organization, OrganizationMember
from fundmatch.errors import DelegationError

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    NONE = "none"
    DIRECT = "direct"
    DELEGATED = "delegated"


def choose_strategy(eligible_count: int, worker_available: bool, threshold: int) -> Strategy:
    if eligible_count <= 0:
        return Strategy.NONE
    if eligible_count > threshold and worker_available:
        return Strategy.DELEGATED
    return Strategy.DIRECT


def _eligible_filter(stmt):
    return (stmt
            .where(Organization.deleted_at.is_(None))
            .where(exists().where(MatchingPreference.organization_id == Organization.id))
            .where(exists().where(OrganizationMember.organization_id == Organization.id)))


def count_eligible_organizations(db: Session) -> int:
    return db.scalar(_eligible_filter(select(func.count(Organization.id)))) or 0


def eligible_organization_ids(db: Session, limit: Optional[int] = None) -> List[int]:
    stmt = _eligible_filter(select(Organization.id)).order_by(Organization.id.asc())
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars().all())


@dataclass
class RefreshSummary:
    strategy: str
    triggered_by: str
    eligible: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results_stored: int = 0
    errors: List[str] = field(default_factory=list)
    fallback: bool = False
    worker_response: Optional[Dict[str, Any]] = None
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    finished_at: Optional[str] = None

    def finish(self) -> "RefreshSummary":
        self.finished_at = datetime.now(timezone.utc).isoformat()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# (organization_id) -> stored row count; raises on per-organization failure
ProcessFn = Callable[[int], int]


class DirectExecutor:
    """Processes organizations one at a time inside the caller's request budget."""

    def __init__(self, process: ProcessFn, config: PipelineConfig,
                 session_factory: Callable[[], Session] = SessionLocal,
                 clock: Callable[[], float] = time.monotonic):
        self.process = process
        self.config = config
        self.session_factory = session_factory
        self.clock = clock

    def execute(self, summary: RefreshSummary) -> RefreshSummary:
        with self.session_factory() as db:
            org_ids = eligible_organization_ids(db, limit=self.config.direct_max_orgs)

        summary.skipped = max(0, summary.eligible - len(org_ids))
        deadline = self.clock() + self.config.direct_time_budget_s

        for i, org_id in enumerate(org_ids):
            if self.clock() >= deadline:
                remaining = len(org_ids) - i
                summary.skipped += remaining
                logger.warning("Direct refresh time budget exhausted; %d organization(s) left for the next run",
                               remaining)
                break
            summary.processed += 1
            try:
                summary.results_stored += self.process(org_id)
                summary.succeeded += 1
            except Exception as e:
                summary.failed += 1
                summary.errors.append(f"org={org_id}: {e}")
                logger.error("Matching failed for org=%s: %s", org_id, e, exc_info=True)

        logger.info("Direct refresh: processed=%d succeeded=%d failed=%d skipped=%d",
                    summary.processed, summary.succeeded, summary.failed, summary.skipped)
        return summary


class DelegatedExecutor:
    """Hands the whole batch to the worker process; never iterates organizations itself."""

    def __init__(self, worker_url: str, worker_api_key: str, config: PipelineConfig,
                 http_post: Callable[..., requests.Response] = requests.post):
        self.worker_url = worker_url.rstrip("/")
        self.worker_api_key = worker_api_key
        self.config = config
        self.http_post = http_post

    def execute(self, summary: RefreshSummary) -> RefreshSummary:
        url = f"{self.worker_url}/matching/batch"
        payload = {
            "batchSize": self.config.delegate_batch_size,
            "maxOrganizations": self.config.delegate_max_orgs,
        }
        try:
            resp = self.http_post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {self.worker_api_key}"},
                timeout=self.config.delegate_timeout_s,
            )
        except requests.RequestException as e:
            raise DelegationError(f"Worker unreachable at {url}: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise DelegationError(f"Worker answered {resp.status_code}: {resp.text[:200]}")

        try:
            summary.worker_response = resp.json()
        except ValueError:
            summary.worker_response = {"status": resp.status_code}
        logger.info("Delegated %d organization(s) to worker %s", summary.eligible, self.worker_url)
        return summary


class Orchestrator:
    def __init__(
        self,
        process: ProcessFn,
        settings: Optional[Settings] = None,
        config: Optional[PipelineConfig] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        http_post: Callable[..., requests.Response] = requests.post,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.config = config or get_pipeline_config()
        self.session_factory = session_factory
        self.direct = DirectExecutor(process, self.config, session_factory, clock)
        self.http_post = http_post

    def refresh(self, trigger_source: str, force_direct: bool = False) -> RefreshSummary:
        with self.session_factory() as db:
            eligible = count_eligible_organizations(db)

        worker_available = self.settings.worker_available and not force_direct
        strategy = choose_strategy(eligible, worker_available, self.config.fanout_threshold)
        summary = RefreshSummary(strategy=strategy.value, triggered_by=trigger_source, eligible=eligible)
        logger.info("Matching refresh triggered by %s: eligible=%d strategy=%s",
                    trigger_source, eligible, strategy.value)

        if strategy is Strategy.NONE:
            return summary.finish()

        if strategy is Strategy.DELEGATED:
            delegated = DelegatedExecutor(self.settings.worker_url, self.settings.worker_api_key,
                                          self.config, self.http_post)
            try:
                return delegated.execute(summary).finish()
            except DelegationError as e:
                logger.warning("Delegation failed, falling back to direct execution: %s", e)
                summary.fallback = True
                summary.strategy = Strategy.DIRECT.value

        return self.direct.execute(summary).finish()
