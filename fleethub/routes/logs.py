import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions
from ..schemas.audit import AuditLogResponse
from ..services.audit import get_audit_logs, verify_audit_log

router = APIRouter(prefix="/logs", tags=["logs"])


@router.get("", response_model=List[AuditLogResponse])
def list_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[uuid.UUID] = None,
    actor_id: Optional[uuid.UUID] = None,
    action: Optional[str] = None,
    limit: int = Query(100, le=1000),
    offset: int = 0,
    db: Session = Depends(get_db),
    _=Depends(require_permissions("can_view_logs")),
):
    """Audit trail, newest first. Each entry carries its integrity check result."""
    logs = get_audit_logs(db, entity_type, entity_id, actor_id, action, limit, offset)
    out = []
    for log in logs:
        item = AuditLogResponse.model_validate(log)
        item.integrity_valid = verify_audit_log(log)
        out.append(item)
    return out
