"""
Audit logging service.
Append-only audit log with integrity hashing.
Entries are added to the caller's session so they commit (or roll back)
together with the change they describe.
"""
import hashlib
import json
from datetime import datetime
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings
from .time_rules import utcnow


def record_audit(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: str,
    actor_id: Optional[str] = None,
    org_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    changes: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
    integrity_secret: Optional[str] = None
) -> AuditLog:
    """
    Append an audit entry to the current transaction.

    Args:
        db: Database session (not committed here)
        action: Action performed (shift_assignment.clock_in|shift.approved|...)
        entity_type: Type of entity (shift|shift_assignment|correction_request|location)
        entity_id: Entity ID
        actor_id: User ID who performed the action, or "system"
        org_id: Organization ID
        metadata: Additional context (GPS data, computed figures, ...)
        changes: Before/after diff
        timestamp: Event time (defaults to now)
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)

    Returns:
        The pending AuditLog object
    """
    timestamp_utc = timestamp or utcnow()

    if integrity_secret is None:
        integrity_secret = settings.jwt_secret

    integrity_hash = None
    if integrity_secret:
        canonical_data = {
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "action": action,
            "actor_id": str(actor_id) if actor_id else None,
            "organization_id": org_id,
            "timestamp_utc": timestamp_utc.isoformat(),
            "changes": changes,
            "metadata": metadata,
        }
        canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
        canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
        hash_input = f"{canonical_json}:{integrity_secret}"
        integrity_hash = hashlib.sha256(hash_input.encode()).hexdigest()

    audit_log = AuditLog(
        organization_id=org_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_id=str(actor_id) if actor_id else None,
        changes_json=_jsonable(changes),
        metadata_json=_jsonable(metadata),
        timestamp_utc=timestamp_utc,
        integrity_hash=integrity_hash,
    )
    db.add(audit_log)
    return audit_log


def _jsonable(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    # JSON columns cannot hold datetimes
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = 100,
    offset: int = 0
) -> list:
    """Get audit logs with optional filtering, newest first."""
    query = db.query(AuditLog)

    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)

    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)

    if action:
        query = query.filter(AuditLog.action == action)

    query = query.order_by(AuditLog.timestamp_utc.desc())
    query = query.limit(limit).offset(offset)

    return query.all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    all_keys = set(before.keys()) | set(after.keys())

    for key in all_keys:
        before_val = before.get(key)
        after_val = after.get(key)

        if before_val != after_val:
            diff[key] = {
                "before": before_val,
                "after": after_val,
            }

    return diff
