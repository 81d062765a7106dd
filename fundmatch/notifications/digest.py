from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Dict, List, Optional, Sequence
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from fundmatch.db.models import MatchingResult, NotificationSetting, User

logger = logging.getLogger(__name__)

DEFAULT_USER_NAME = "사용자"


@dataclass(frozen=True)
class DigestItem:
    opportunity_id: int
    name: str
    organization: str
    company_name: str
    total_score: int
    confidence: str
    deadline: Optional[date] = None
    match_reasons: tuple = ()

    def line(self, rank: int) -> str:
        deadline = self.deadline.isoformat() if self.deadline else "상시"
        return f"{rank}. {self.name} ({self.organization}) - {self.total_score}점, 마감 {deadline}"


@dataclass(frozen=True)
class Digest:
    user_id: int
    user_name: str
    email: Optional[str]
    total_count: int
    items: tuple

    def top(self, n: int) -> List[DigestItem]:
        return list(self.items[:n])

    def render(self, n: int) -> str:
        lines = [f"{self.user_name}님, 오늘 {self.total_count}건의 새로운 매칭 결과가 있습니다.", ""]
        lines += [item.line(i) for i, item in enumerate(self.top(n), start=1)]
        if self.total_count > n:
            lines.append(f"... 외 {self.total_count - n}건")
        return "\n".join(lines)


@dataclass
class DigestSummary:
    users_processed: int = 0
    sent: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"usersProcessed": self.users_processed, "sent": dict(self.sent), "errors": list(self.errors)}


def _item(row: MatchingResult) -> DigestItem:
    opp = row.opportunity
    return DigestItem(
        opportunity_id=row.opportunity_id,
        name=opp.name if opp else f"#{row.opportunity_id}",
        organization=(opp.organization if opp else "") or "",
        company_name=row.organization.name if row.organization else "",
        total_score=row.total_score,
        confidence=row.confidence,
        deadline=opp.deadline if opp else None,
        match_reasons=tuple(row.match_reasons or ()),
    )


def build_digest(user: User, rows: Sequence[MatchingResult]) -> Digest:
    ordered = sorted(rows, key=lambda r: (-r.total_score, r.id))
    return Digest(
        user_id=user.id,
        user_name=user.name or DEFAULT_USER_NAME,
        email=user.email,
        total_count=len(ordered),
        items=tuple(_item(r) for r in ordered),
    )


def start_of_day(today: date) -> datetime:
    return datetime.combine(today, time.min, tzinfo=timezone.utc)


def run_daily_digest(db: Session, channels: Sequence, today: Optional[date] = None) -> DigestSummary:
    """Send each opted-in user a digest of results first matched today, one channel at a time."""
    today = today or datetime.now(timezone.utc).date()
    summary = DigestSummary(sent={c.name: 0 for c in channels})

    settings = db.execute(
        select(NotificationSetting)
        .options(joinedload(NotificationSetting.user))
        .where(NotificationSetting.matching_result_enabled.is_(True))
    ).scalars().all()
    if not settings:
        logger.info("Daily digest: no users with result notifications enabled")
        return summary

    by_user_setting = {s.user_id: s for s in settings}
    rows = db.execute(
        select(MatchingResult)
        .options(joinedload(MatchingResult.opportunity), joinedload(MatchingResult.organization))
        .where(MatchingResult.user_id.in_(list(by_user_setting)))
        .where(MatchingResult.created_at >= start_of_day(today))
    ).scalars().all()

    grouped: Dict[int, List[MatchingResult]] = defaultdict(list)
    for row in rows:
        grouped[row.user_id].append(row)

    for user_id, user_rows in grouped.items():
        setting = by_user_setting[user_id]
        digest = build_digest(setting.user, user_rows)
        summary.users_processed += 1
        for channel in channels:
            if not channel.enabled_for(setting, digest):
                continue
            try:
                channel.send(setting, digest)
                summary.sent[channel.name] += 1
            except Exception as e:
                summary.errors.append(f"user={user_id} channel={channel.name}: {e}")
                logger.error("Digest delivery failed user=%s channel=%s: %s",
                             user_id, channel.name, e, exc_info=True)

    logger.info("Daily digest completed: users=%d sent=%s errors=%d",
                summary.users_processed, summary.sent, len(summary.errors))
    return summary
