"""
Audit logging service.
Append-only audit log with integrity hashing.
"""
import hashlib
import json
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, Iterable
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings


def _canonical_hash(
    entity_type: str,
    entity_id,
    action: str,
    actor_id,
    actor_role: Optional[str],
    source: Optional[str],
    timestamp_utc: datetime,
    changes_json: Optional[Dict],
    context: Optional[Dict],
    integrity_secret: str,
) -> str:
    canonical_data = {
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "actor_id": str(actor_id) if actor_id else None,
        "actor_role": actor_role,
        "source": source,
        "timestamp_utc": timestamp_utc.replace(tzinfo=None).isoformat(),
        "changes": changes_json,
        "context": context,
    }
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{integrity_secret}".encode()).hexdigest()


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id,
    action: str,
    actor_id=None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None
) -> AuditLog:
    """
    Create an append-only audit log entry.

    Args:
        db: Database session
        entity_type: Type of entity (machine|machine_type|site|supplier|allocation_event|user)
        entity_id: Entity ID
        action: Action performed (CREATE|UPDATE|DELETE|APPROVE|REJECT|SYNC)
        actor_id: User ID who performed the action
        actor_role: Role of the actor (admin|dev|operator|supplier|system)
        source: Source of the action (api|system|script)
        changes_json: Before/after diff
        context: Additional context (event_type, machine_id, site_id, ...)
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)

    Returns:
        Created AuditLog object
    """
    timestamp_utc = datetime.utcnow().replace(tzinfo=None)
    source = source or "system"

    if integrity_secret is None:
        integrity_secret = settings.jwt_secret

    integrity_hash = None
    if integrity_secret:
        integrity_hash = _canonical_hash(
            entity_type, entity_id, action, actor_id, actor_role, source,
            timestamp_utc, changes_json, context, integrity_secret,
        )

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=uuid.UUID(str(entity_id)),
        action=action,
        actor_id=uuid.UUID(str(actor_id)) if actor_id else None,
        actor_role=actor_role,
        source=source,
        changes_json=changes_json,
        timestamp_utc=timestamp_utc,
        context=context,
        integrity_hash=integrity_hash,
    )

    db.add(audit_log)
    db.commit()
    db.refresh(audit_log)

    return audit_log


def verify_audit_log(audit_log: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    """Recompute the integrity hash of a stored entry."""
    if integrity_secret is None:
        integrity_secret = settings.jwt_secret
    if not audit_log.integrity_hash or not integrity_secret:
        return False
    expected = _canonical_hash(
        audit_log.entity_type, audit_log.entity_id, audit_log.action, audit_log.actor_id,
        audit_log.actor_role, audit_log.source, audit_log.timestamp_utc,
        audit_log.changes_json, audit_log.context, integrity_secret,
    )
    return expected == audit_log.integrity_hash


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[uuid.UUID] = None,
    actor_id: Optional[uuid.UUID] = None,
    action: Optional[str] = None,
    limit: int = 100,
    offset: int = 0
) -> list:
    """
    Get audit logs with optional filtering, newest first.
    """
    query = db.query(AuditLog)

    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)

    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)

    if actor_id:
        query = query.filter(AuditLog.actor_id == actor_id)

    if action:
        query = query.filter(AuditLog.action == action.upper())

    query = query.order_by(AuditLog.timestamp_utc.desc())
    query = query.limit(limit).offset(offset)

    return query.all()


def _jsonable(value):
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def snapshot(obj, fields: Iterable[str]) -> Dict[str, Any]:
    """JSON-safe view of selected attributes, for diffs."""
    return {f: _jsonable(getattr(obj, f, None)) for f in fields}


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
