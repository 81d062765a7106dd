from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from fundmatch.db.models import MatchingPreference

logger = logging.getLogger(__name__)

LIST_FIELDS = ("categories", "regions", "sub_regions", "exclude_keywords")


@dataclass(frozen=True)
class PreferenceCriteria:
    """Immutable view of a preference, as consumed by the scoring engine."""
    categories: Tuple[str, ...] = ()
    min_amount: Optional[int] = None
    max_amount: Optional[int] = None
    regions: Tuple[str, ...] = ()
    sub_regions: Tuple[str, ...] = ()
    exclude_keywords: Tuple[str, ...] = ()

    @property
    def configured(self) -> bool:
        return len(self.categories) > 0


def _clean_list(values: Any) -> list[str]:
    if not values:
        return []
    out: list[str] = []
    for v in values:
        s = str(v).strip()
        if s and s not in out:
            out.append(s)
    return out


def _clean_amount(value: Any) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    amount = int(value)
    if amount < 0:
        raise ValueError("Amounts must be non-negative")
    return amount


def is_configured(pref: Optional[MatchingPreference]) -> bool:
    return bool(pref is not None and pref.categories)


def to_criteria(pref: Optional[MatchingPreference]) -> Optional[PreferenceCriteria]:
    if pref is None:
        return None
    return PreferenceCriteria(
        categories=tuple(pref.categories or ()),
        min_amount=pref.min_amount,
        max_amount=pref.max_amount,
        regions=tuple(pref.regions or ()),
        sub_regions=tuple(pref.sub_regions or ()),
        exclude_keywords=tuple(pref.exclude_keywords or ()),
    )


def get_preference(db: Session, user_id: int, organization_id: int) -> Optional[MatchingPreference]:
    stmt = select(MatchingPreference).where(
        MatchingPreference.user_id == user_id,
        MatchingPreference.organization_id == organization_id,
    )
    return db.execute(stmt).scalar_one_or_none()


def latest_preference_for_org(db: Session, organization_id: int) -> Optional[MatchingPreference]:
    stmt = (select(MatchingPreference)
            .where(MatchingPreference.organization_id == organization_id)
            .order_by(MatchingPreference.updated_at.desc(), MatchingPreference.id.desc())
            .limit(1))
    return db.execute(stmt).scalars().first()


def save_preference(db: Session, user_id: int, organization_id: int, data: Dict[str, Any]) -> MatchingPreference:
    values: Dict[str, Any] = {k: _clean_list(data.get(k)) for k in LIST_FIELDS}
    values["min_amount"] = _clean_amount(data.get("min_amount"))
    values["max_amount"] = _clean_amount(data.get("max_amount"))

    if (values["min_amount"] is not None and values["max_amount"] is not None
            and values["min_amount"] > values["max_amount"]):
        raise ValueError("min_amount must not exceed max_amount")

    pref = get_preference(db, user_id, organization_id)
    if pref is None:
        pref = MatchingPreference(user_id=user_id, organization_id=organization_id)
        db.add(pref)

    for k, v in values.items():
        setattr(pref, k, v)

    try:
        db.commit()
        db.refresh(pref)
    except Exception:
        db.rollback()
        raise

    logger.info("Saved matching preference user=%s org=%s categories=%s", user_id, organization_id, values["categories"])
    return pref


def delete_preference(db: Session, user_id: int, organization_id: int) -> bool:
    pref = get_preference(db, user_id, organization_id)
    if pref is None:
        return False
    db.delete(pref)
    db.commit()
    return True
