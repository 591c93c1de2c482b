"""
Capability checks for time-clock operations.
"""
from typing import Iterable, Optional
from sqlalchemy.orm import Session

from ..models.models import Member
from ..errors import Forbidden


MANAGER_ROLES = ("manager", "admin", "owner")


def get_membership(db: Session, user_id: str, org_id: str) -> Optional[Member]:
    return db.query(Member).filter(
        Member.user_id == user_id,
        Member.organization_id == org_id,
    ).first()


def require_role(
    db: Session,
    actor_id: str,
    org_id: str,
    allowed_roles: Iterable[str] = MANAGER_ROLES,
    message: str = "Insufficient permissions",
) -> Member:
    """
    Ensure the actor belongs to the organization with one of the allowed roles.
    Returns the membership so callers can log the role.
    """
    membership = get_membership(db, actor_id, org_id)
    if not membership or membership.role not in set(allowed_roles):
        raise Forbidden(message, details={"allowed_roles": list(allowed_roles)})
    return membership


def require_member(db: Session, user_id: str, org_id: str) -> Member:
    membership = get_membership(db, user_id, org_id)
    if not membership:
        raise Forbidden("Worker not in organization")
    return membership
