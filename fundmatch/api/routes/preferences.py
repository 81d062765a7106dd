from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from fundmatch.api.deps import Role, get_current_user_id, get_db, require_org_role
from fundmatch.api.schemas import PreferenceOut, PreferencePayload
from fundmatch.db.models import MatchingPreference
from fundmatch.matching.preferences import (
    delete_preference, get_preference, is_configured, save_preference,
)

router = APIRouter(prefix="/api/matching/preferences", tags=["preferences"])


def _to_out(p: MatchingPreference) -> PreferenceOut:
    return PreferenceOut(
        id=p.id,
        organization_id=p.organization_id,
        categories=list(p.categories or []),
        min_amount=p.min_amount,
        max_amount=p.max_amount,
        regions=list(p.regions or []),
        sub_regions=list(p.sub_regions or []),
        exclude_keywords=list(p.exclude_keywords or []),
        configured=is_configured(p),
        updated_at=p.updated_at,
    )


@router.get("", response_model=Optional[PreferenceOut])
def read_preference(
    organization_id: int = Query(..., alias="organizationId"),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    require_org_role(db, user_id, organization_id, Role.viewer)
    pref = get_preference(db, user_id, organization_id)
    return _to_out(pref) if pref else None


@router.post("", response_model=PreferenceOut)
def write_preference(
    payload: PreferencePayload,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    require_org_role(db, user_id, payload.organization_id, Role.member)
    try:
        pref = save_preference(db, user_id, payload.organization_id, payload.model_dump(exclude={"organization_id"}))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return _to_out(pref)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
def remove_preference(
    organization_id: int = Query(..., alias="organizationId"),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    require_org_role(db, user_id, organization_id, Role.member)
    if not delete_preference(db, user_id, organization_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Preference not found")
