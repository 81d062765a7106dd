from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from fundmatch.config import PipelineConfig, get_pipeline_config
from fundmatch.db.database import SessionLocal
from fundmatch.db.models import (
    Opportunity, Organization, OrganizationMember,
)
from fundmatch.errors import FundmatchError, OrganizationNotEligible
from fundmatch.matching.preferences import (
    get_preference, latest_preference_for_org, to_criteria,
)
from fundmatch.matching.result_store import ResultStore
from fundmatch.matching.scoring import (
    CertificationInfo, OpportunitySnapshot, OrganizationProfile, ScoreResult,
    ScoringEngine, SkipReason,
)
from fundmatch.matching.similarity import SimilarityProvider

logger = logging.getLogger(__name__)


@dataclass
class OrganizationOutcome:
    organization_id: int
    user_id: int
    candidates: int = 0
    scored: int = 0
    stored: int = 0
    store_failures: int = 0
    removed: int = 0
    degraded: bool = False
    skipped: Dict[str, int] = field(default_factory=dict)


def build_profile(org: Organization) -> OrganizationProfile:
    keywords = [org.business_category, org.main_business, *(org.business_items or [])]
    keywords = tuple(k.strip() for k in keywords if k and k.strip())

    certs = tuple(
        CertificationInfo(c.certification_type, c.certification_name)
        for c in org.certifications if c.is_active
    )

    documents = [
        d for d in org.documents
        if d.deleted_at is None and d.status == "analyzed" and d.summary
    ][:10]
    doc_summaries = [
        f"{d.document_type}: {d.summary} {', '.join(d.key_insights or [])}".strip()
        for d in documents
    ]
    cert_lines = [
        f"{c.certification_type} {c.certification_name} ({c.issuing_organization or ''})"
        for c in org.certifications if c.is_active
    ][:10]
    revenue_line = f"연매출 {org.annual_revenue:,}원" if org.annual_revenue else ""

    parts = [org.name, *keywords, org.introduction, org.vision, org.mission,
             *doc_summaries, *cert_lines, revenue_line]
    profile_text = " ".join(p for p in parts if p)

    return OrganizationProfile(
        id=org.id,
        name=org.name,
        company_type=org.company_type or "",
        business_keywords=keywords,
        is_venture=bool(org.is_venture),
        is_innobiz=bool(org.is_innobiz),
        is_mainbiz=bool(org.is_mainbiz),
        employee_count=org.employee_count,
        annual_revenue=org.annual_revenue,
        certifications=certs,
        profile_text=profile_text,
    )


def snapshot(opp: Opportunity) -> OpportunitySnapshot:
    return OpportunitySnapshot(
        id=opp.id,
        name=opp.name,
        category=opp.category or "",
        sub_category=opp.sub_category,
        target=opp.target or "",
        eligibility=opp.eligibility,
        summary=opp.summary or "",
        description=opp.description,
        organization=opp.organization or "",
        region=opp.region,
        sub_region=opp.sub_region,
        amount_min=opp.amount_min,
        amount_max=opp.amount_max,
        deadline=opp.deadline,
        is_permanent=bool(opp.is_permanent),
    )


def load_candidates(db: Session, limit: int) -> List[OpportunitySnapshot]:
    rows = db.execute(
        select(Opportunity)
        .where(Opportunity.deleted_at.is_(None))
        .where(Opportunity.status == "active")
        .order_by(Opportunity.updated_at.desc(), Opportunity.id.asc())
        .limit(limit)
    ).scalars().all()
    return [snapshot(o) for o in rows]


class MatchingRunner:
    """Scores one organization against the active catalog and persists the best pairs."""

    def __init__(
        self,
        engine: ScoringEngine,
        provider: SimilarityProvider,
        result_store: Optional[ResultStore] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        config: Optional[PipelineConfig] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.engine = engine
        self.provider = provider
        self.session_factory = session_factory
        self.result_store = result_store or ResultStore(session_factory)
        self.config = config or get_pipeline_config()
        self.today = today or date.today

    def _load(self, organization_id: int, user_id: Optional[int], use_preference: bool):
        with self.session_factory() as db:
            org = db.execute(
                select(Organization)
                .options(selectinload(Organization.certifications), selectinload(Organization.documents))
                .where(Organization.id == organization_id)
                .where(Organization.deleted_at.is_(None))
            ).scalar_one_or_none()
            if org is None:
                raise OrganizationNotEligible(f"Organization {organization_id} not found")

            if user_id is None:
                # batch runs: results belong to the owner of the latest preference
                member_id = db.scalar(
                    select(OrganizationMember.user_id)
                    .where(OrganizationMember.organization_id == organization_id)
                    .order_by(OrganizationMember.id.asc())
                    .limit(1)
                )
                if member_id is None:
                    raise OrganizationNotEligible(f"Organization {organization_id} has no member")
                pref = latest_preference_for_org(db, organization_id) if use_preference else None
                if use_preference and pref is None:
                    raise OrganizationNotEligible(f"Organization {organization_id} has no matching preference")
                user_id = pref.user_id if pref is not None else member_id
            else:
                pref = get_preference(db, user_id, organization_id) if use_preference else None

            profile = build_profile(org)
            criteria = to_criteria(pref)
            candidates = load_candidates(db, self.config.candidate_limit)
        return profile, user_id, criteria, candidates

    def _similarities(self, profile: OrganizationProfile,
                      candidates: List[OpportunitySnapshot]) -> Optional[Dict[int, float]]:
        if not self.provider.available():
            logger.warning("Similarity provider unavailable; degraded scoring for org=%s", profile.id)
            return None
        hits = self.provider.search(profile.profile_text, self.config.similarity_k)
        text_scores = {h.source_id: h.score for h in hits}

        with self.session_factory() as db:
            doc_scores = self.provider.document_scores(db, profile.id, [c.id for c in candidates])
        if not doc_scores:
            return text_scores

        # profile text and uploaded documents are blended only where a document matched
        weight = self.config.document_weight
        blended = dict(text_scores)
        for opp_id, doc in doc_scores.items():
            blended[opp_id] = (1 - weight) * text_scores.get(opp_id, 0.0) + weight * doc
        return blended

    def run_for_organization(self, organization_id: int, user_id: Optional[int] = None,
                             use_preference: bool = True) -> OrganizationOutcome:
        profile, user_id, criteria, candidates = self._load(organization_id, user_id, use_preference)
        similarities = self._similarities(profile, candidates)
        today = self.today()

        outcome = OrganizationOutcome(organization_id=organization_id, user_id=user_id,
                                      candidates=len(candidates))
        skipped: Counter = Counter()
        scored: List[ScoreResult] = []

        for opp in candidates:
            raw = None if similarities is None else similarities.get(opp.id, 0.0)
            result = self.engine.score(profile, opp, criteria, raw, today)
            if isinstance(result, SkipReason):
                skipped[result.code.value] += 1
                continue
            scored.append(result)

        scored.sort(key=lambda r: (-r.total_score, r.opportunity_id))
        outcome.scored = len(scored)
        outcome.skipped = dict(skipped)
        outcome.degraded = any(r.degraded for r in scored)

        top = scored[: self.config.max_results_per_org]
        for result in top:
            try:
                self.result_store.upsert(user_id, organization_id, result)
                outcome.stored += 1
            except Exception as e:
                outcome.store_failures += 1
                logger.error("Upsert failed org=%s opportunity=%s: %s",
                             organization_id, result.opportunity_id, e, exc_info=True)

        if outcome.store_failures:
            raise FundmatchError(
                f"{outcome.store_failures} result(s) failed to persist for organization {organization_id}"
            )

        # pairs that fell out of the top N or became ineligible since the last run
        outcome.removed = self.result_store.remove_unlisted(organization_id, [r.opportunity_id for r in top])

        logger.info("Matched org=%s: candidates=%d scored=%d stored=%d removed=%d skipped=%s degraded=%s",
                    organization_id, outcome.candidates, outcome.scored, outcome.stored, outcome.removed,
                    outcome.skipped, outcome.degraded)
        return outcome


def default_runner(provider: Optional[SimilarityProvider] = None) -> MatchingRunner:
    """Runner wired to the YAML config, the FAISS index and the global session factory."""
    from fundmatch.config import get_scoring_config
    from fundmatch.matching.similarity import FaissSimilarityProvider

    return MatchingRunner(
        engine=ScoringEngine(get_scoring_config()),
        provider=provider or FaissSimilarityProvider(),
        session_factory=SessionLocal,
    )


def stored_count(runner: MatchingRunner) -> Callable[[int], int]:
    """Adapt a runner to the (organization_id) -> stored rows callable used by batch executors."""
    def process(organization_id: int) -> int:
        return runner.run_for_organization(organization_id).stored
    return process
