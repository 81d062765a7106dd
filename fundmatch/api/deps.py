from enum import Enum
from typing import Generator, Optional
import hmac

from fastapi import Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from fundmatch.config import get_settings
from fundmatch.db.database import SessionLocal
from fundmatch.db.models import OrganizationMember


class Role(str, Enum):
    owner = "owner"
    admin = "admin"
    member = "member"
    viewer = "viewer"


ROLE_RANK = {Role.viewer: 0, Role.member: 1, Role.admin: 2, Role.owner: 3}


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> int:
    if x_user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identity",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user identity")


def require_org_role(db: Session, user_id: int, organization_id: int, minimum: Role) -> Role:
    """Return the caller's role in the organization, or raise 403 when it is below ``minimum``."""
    raw = db.scalar(
        select(OrganizationMember.role)
        .where(OrganizationMember.organization_id == organization_id)
        .where(OrganizationMember.user_id == user_id)
    )
    if raw is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a member of this organization")
    try:
        role = Role(raw)
    except ValueError:
        role = Role.viewer
    if ROLE_RANK[role] < ROLE_RANK[minimum]:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                            detail=f"Requires {minimum.value} role or higher")
    return role


def require_worker_key(authorization: Optional[str] = Header(None)) -> None:
    expected = get_settings().worker_api_key
    scheme, _, token = (authorization or "").partition(" ")
    token = token.strip()
    valid = scheme.lower() == "bearer" and expected and token
    if not valid or not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
