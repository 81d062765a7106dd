"""
Multi-factor compatibility scoring for one (organization, opportunity) pair.

Everything in this module is pure: the runner loads rows, turns them into the
immutable snapshots below and hands them over together with the raw
similarity returned by the similarity provider. Weights and thresholds come
from an injected ScoringConfig.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union
import re

from fundmatch.config import ScoringConfig
from fundmatch.matching.preferences import PreferenceCriteria

HIGH = "high"
MEDIUM = "medium"
LOW = "low"

REASON_CATEGORY_MATCH = "관심 분야 일치"
REASON_INDUSTRY_RELATED = "업종 연관"
REASON_HIGH_SIMILARITY = "높은 사업 유사도"
REASON_NEAR_DEADLINE = "마감 임박"
REASON_PERMANENT = "상시모집"
REASON_AMOUNT_FIT = "적정 지원 규모"
REASON_DEGRADED = "간이 매칭"

# organization business keyword -> words that signal the same industry in a call text
INDUSTRY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "소프트웨어": ("sw", "소프트웨어", "it", "정보통신", "디지털", "스마트", "ai", "데이터"),
    "it서비스": ("it", "정보통신", "sw", "소프트웨어", "디지털", "플랫폼"),
    "정보통신": ("it", "정보통신", "sw", "소프트웨어", "ict"),
    "플랫폼": ("플랫폼", "it", "디지털", "sw"),
    "ai": ("ai", "인공지능", "데이터", "it", "sw", "디지털"),
    "제조": ("제조", "생산", "부품", "산업", "공장", "스마트공장"),
    "기계": ("기계", "제조", "장비", "설비"),
    "전자": ("전자", "반도체", "부품", "it"),
    "바이오": ("바이오", "의료", "헬스케어", "생명"),
    "의료": ("의료", "바이오", "헬스케어", "건강"),
    "헬스케어": ("헬스케어", "의료", "바이오", "건강"),
    "디자인": ("디자인", "콘텐츠", "창작", "문화"),
    "콘텐츠": ("콘텐츠", "디자인", "문화", "미디어"),
    "자동화": ("자동화", "ai", "디지털", "스마트"),
}

_SPLIT = re.compile(r"[\s,/]+")


@dataclass(frozen=True)
class CertificationInfo:
    certification_type: str
    certification_name: str

    def mentions(self, word: str) -> bool:
        w = word.lower()
        return w in self.certification_type.lower() or w in self.certification_name.lower()


@dataclass(frozen=True)
class OrganizationProfile:
    id: int
    name: str
    company_type: str = ""
    business_keywords: Tuple[str, ...] = ()
    is_venture: bool = False
    is_innobiz: bool = False
    is_mainbiz: bool = False
    employee_count: Optional[int] = None
    annual_revenue: Optional[int] = None
    certifications: Tuple[CertificationInfo, ...] = ()
    profile_text: str = ""

    def has_certification(self, word: str) -> bool:
        return any(c.mentions(word) for c in self.certifications)


@dataclass(frozen=True)
class OpportunitySnapshot:
    id: int
    name: str
    category: str = ""
    sub_category: Optional[str] = None
    target: str = ""
    eligibility: Optional[str] = None
    summary: str = ""
    description: Optional[str] = None
    organization: str = ""
    region: Optional[str] = None
    sub_region: Optional[str] = None
    amount_min: Optional[int] = None
    amount_max: Optional[int] = None
    deadline: Optional[date] = None
    is_permanent: bool = False

    def searchable_text(self) -> str:
        parts = [self.name, self.summary, self.description, self.eligibility, self.target]
        return " ".join(p for p in parts if p).lower()


class SkipCode(str, Enum):
    EXCLUDED_KEYWORD = "excluded_keyword"
    REGION_MISMATCH = "region_mismatch"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SkipReason:
    opportunity_id: int
    code: SkipCode
    detail: str = ""


@dataclass(frozen=True)
class SubScores:
    similarity: int
    category: int
    eligibility: int
    timeliness: int
    amount: int


@dataclass(frozen=True)
class ScoreResult:
    opportunity_id: int
    sub_scores: SubScores
    total_score: int
    confidence: str
    match_reasons: Tuple[str, ...] = field(default_factory=tuple)
    degraded: bool = False


ScoreOutcome = Union[ScoreResult, SkipReason]


def _clamp(value: float, lo: int = 0, hi: int = 100) -> int:
    return int(max(lo, min(hi, round(value))))


def confidence_for(total_score: int, config: ScoringConfig) -> str:
    if total_score >= config.high_threshold:
        return HIGH
    if total_score >= config.medium_threshold:
        return MEDIUM
    return LOW


class ScoringEngine:
    def __init__(self, config: ScoringConfig):
        self.config = config

    # ---------- Filters ----------
    def _excluded_keyword(self, opp: OpportunitySnapshot, criteria: Optional[PreferenceCriteria]) -> Optional[str]:
        if criteria is None or not criteria.exclude_keywords:
            return None
        text = opp.searchable_text()
        for kw in criteria.exclude_keywords:
            k = kw.strip().lower()
            if k and k in text:
                return kw
        return None

    def _region_mismatch(self, opp: OpportunitySnapshot, criteria: Optional[PreferenceCriteria]) -> Optional[str]:
        if criteria is None:
            return None
        nationwide = self.config.nationwide_region
        regions = [r for r in criteria.regions if r]
        if regions and nationwide not in regions:
            region = (opp.region or "").strip()
            if region and region != nationwide and region not in regions:
                return region
        if criteria.sub_regions and opp.sub_region and opp.sub_region not in criteria.sub_regions:
            return opp.sub_region
        return None

    def check_filters(self, opp: OpportunitySnapshot, criteria: Optional[PreferenceCriteria], today: date) -> Optional[SkipReason]:
        kw = self._excluded_keyword(opp, criteria)
        if kw is not None:
            return SkipReason(opp.id, SkipCode.EXCLUDED_KEYWORD, kw)
        region = self._region_mismatch(opp, criteria)
        if region is not None:
            return SkipReason(opp.id, SkipCode.REGION_MISMATCH, region)
        if not opp.is_permanent and opp.deadline is not None and opp.deadline < today:
            return SkipReason(opp.id, SkipCode.EXPIRED, opp.deadline.isoformat())
        return None

    # ---------- Sub-scores ----------
    def similarity_score(self, raw_similarity: Optional[float]) -> int:
        if raw_similarity is None or raw_similarity <= 0:
            return 0
        band = self.config.similarity_band
        raw = raw_similarity * 100
        clamped = max(band.input_min, min(band.input_max, raw))
        scaled = ((clamped - band.input_min) / (band.input_max - band.input_min)
                  * (band.output_max - band.output_min) + band.output_min)
        return _clamp(scaled)

    def category_score(self, org: OrganizationProfile, opp: OpportunitySnapshot,
                       criteria: Optional[PreferenceCriteria]) -> int:
        terms = [t.lower() for t in (criteria.categories if criteria else ()) if t]
        terms += [k.lower() for k in org.business_keywords if k]
        if not terms:
            return self.config.category_default

        headline = [f.lower() for f in (opp.category, opp.sub_category, opp.name) if f]
        for term in terms:
            if any(term in f for f in headline):
                return 100

        search_text = " ".join([opp.target, opp.eligibility or "", opp.name]).lower()
        score = 0
        for term in terms:
            for industry, words in INDUSTRY_KEYWORDS.items():
                if industry in term:
                    hits = sum(1 for w in words if w in search_text)
                    if hits >= 2:
                        score = max(score, 70)
                    elif hits == 1:
                        score = max(score, 60)
            for part in _SPLIT.split(term):
                if len(part) >= 2 and part in search_text:
                    score = max(score, 60)
                    break
        return score or self.config.category_default

    def eligibility_score(self, org: OrganizationProfile, opp: OpportunitySnapshot) -> Tuple[int, List[str]]:
        text = f"{opp.target} {opp.eligibility or ''}".lower()
        checks = []

        if "중소기업" in text or "sme" in text:
            checks.append(("중소기업 대상 사업", "중소" in org.company_type))
        if "벤처" in text:
            checks.append(("벤처기업 인증 보유", org.is_venture or org.has_certification("벤처")))
        if "이노비즈" in text:
            checks.append(("이노비즈 인증 보유", org.is_innobiz or org.has_certification("이노비즈")))
        if "메인비즈" in text:
            checks.append(("메인비즈 인증 보유", org.is_mainbiz or org.has_certification("메인비즈")))
        if "iso" in text:
            checks.append(("ISO 인증 보유", org.has_certification("iso")))
        if "특허" in text or "지식재산" in text:
            checks.append(("특허 보유", org.has_certification("특허")))

        if not checks:
            return 100, []

        satisfied = [label for label, ok in checks if ok]
        floor = self.config.eligibility_partial_floor
        score = floor + (100 - floor) * len(satisfied) / len(checks)
        return _clamp(score), satisfied

    def timeliness_score(self, opp: OpportunitySnapshot, today: date) -> Tuple[int, List[str]]:
        knobs = self.config.timeliness
        if opp.is_permanent:
            return knobs.permanent, [REASON_PERMANENT]
        if opp.deadline is None:
            return knobs.no_deadline, []

        days = (opp.deadline - today).days
        if days < 0:
            return 0, []
        if days < knobs.risky_days:
            return knobs.risky_score, [REASON_NEAR_DEADLINE]

        reasons = [REASON_NEAR_DEADLINE] if days <= knobs.near_deadline_days else []
        if days <= knobs.sweet_spot_days:
            return 100, reasons

        span = max(1, knobs.decay_until_days - knobs.sweet_spot_days)
        decayed = 100 - (100 - knobs.floor) * (days - knobs.sweet_spot_days) / span
        return _clamp(max(knobs.floor, decayed)), reasons

    def amount_score(self, org: OrganizationProfile, opp: OpportunitySnapshot,
                     criteria: Optional[PreferenceCriteria]) -> Tuple[int, List[str]]:
        knobs = self.config.amount
        if opp.amount_min is None and opp.amount_max is None:
            return knobs.unknown, []

        lo = opp.amount_min if opp.amount_min is not None else opp.amount_max
        hi = opp.amount_max if opp.amount_max is not None else opp.amount_min

        if criteria is not None:
            if criteria.min_amount is not None and hi < criteria.min_amount:
                return knobs.outside_preference, []
            if criteria.max_amount is not None and lo > criteria.max_amount:
                return knobs.outside_preference, []

        revenue = org.annual_revenue
        if not revenue:
            return knobs.unknown, []

        band = knobs.band_factor
        if lo / band <= revenue <= hi * band:
            return 100, [REASON_AMOUNT_FIT]
        if lo / (band * 10) <= revenue <= hi * band * 10:
            return knobs.near_band, []
        return knobs.far, []

    # ---------- Totals ----------
    def weighted_total(self, sub: SubScores) -> int:
        w = self.config.weights
        total = (sub.similarity * w.similarity
                 + sub.category * w.category
                 + sub.eligibility * w.eligibility
                 + sub.timeliness * w.timeliness
                 + sub.amount * w.amount)
        return _clamp(total)

    def degraded_total(self, org: OrganizationProfile, opp: OpportunitySnapshot,
                       criteria: Optional[PreferenceCriteria], timeliness: int) -> int:
        knobs = self.config.degraded
        text = opp.searchable_text() + " " + " ".join(f for f in (opp.category, opp.sub_category) if f).lower()
        keywords = {k.lower() for k in org.business_keywords if k}
        if criteria is not None:
            keywords |= {c.lower() for c in criteria.categories if c}
        overlaps = sum(1 for k in keywords if k in text)

        total = knobs.base + min(overlaps * knobs.keyword_bonus, knobs.keyword_bonus_cap)
        if timeliness >= 80:
            total += knobs.recency_bonus
        return _clamp(min(total, knobs.score_ceiling))

    def score(self, org: OrganizationProfile, opp: OpportunitySnapshot,
              criteria: Optional[PreferenceCriteria], raw_similarity: Optional[float],
              today: date) -> ScoreOutcome:
        """Score one pair, or say why it was skipped.

        ``raw_similarity`` is the provider's cosine similarity in [0, 1]; pass
        None when embeddings are unavailable. Without a configured preference or
        without embeddings the coarse degraded path is used.
        """
        skip = self.check_filters(opp, criteria, today)
        if skip is not None:
            return skip

        degraded = criteria is None or not criteria.configured or raw_similarity is None

        eligibility, eligibility_reasons = self.eligibility_score(org, opp)
        timeliness, timeliness_reasons = self.timeliness_score(opp, today)
        amount, amount_reasons = self.amount_score(org, opp, criteria)
        sub = SubScores(
            similarity=self.similarity_score(raw_similarity),
            category=self.category_score(org, opp, criteria),
            eligibility=eligibility,
            timeliness=timeliness,
            amount=amount,
        )

        if degraded:
            total = self.degraded_total(org, opp, criteria, timeliness)
        else:
            total = self.weighted_total(sub)

        reasons: List[str] = list(eligibility_reasons)
        if sub.similarity >= 70:
            reasons.append(REASON_HIGH_SIMILARITY)
        if sub.category >= 100:
            reasons.append(REASON_CATEGORY_MATCH)
        elif sub.category >= 60:
            reasons.append(REASON_INDUSTRY_RELATED)
        reasons.extend(timeliness_reasons)
        reasons.extend(amount_reasons)
        if degraded:
            reasons.append(REASON_DEGRADED)

        return ScoreResult(
            opportunity_id=opp.id,
            sub_scores=sub,
            total_score=total,
            confidence=confidence_for(total, self.config),
            match_reasons=tuple(reasons),
            degraded=degraded,
        )
