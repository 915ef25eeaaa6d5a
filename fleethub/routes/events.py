import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import get_current_user, require_permissions
from ..models.models import AllocationEvent, Machine
from ..schemas.events import (
    AllocationEventDraft,
    AllocationEventUpdate,
    AllocationEventResponse,
    EventRejectRequest,
    EventLabelsResponse,
    EventStatus,
    EventType,
    EVENT_TYPE_LABELS,
    DOWNTIME_REASON_LABELS,
    EVENT_STATUS_LABELS,
)
from ..schemas.fleet import MachineResponse, MACHINE_STATUS_LABELS, OWNERSHIP_LABELS
from ..services import allocation_service
from ..services.errors import AllocationError
from ..services.event_validator import validate

router = APIRouter(prefix="/events", tags=["events"])


def _http_error(err: AllocationError) -> HTTPException:
    return HTTPException(status_code=err.status_code, detail=err.to_detail())


@router.get("/labels", response_model=EventLabelsResponse)
def get_labels(_=Depends(get_current_user)):
    """Display labels (pt-BR) for the enums shown to users"""
    return {
        "event_types": {k.value: v for k, v in EVENT_TYPE_LABELS.items()},
        "downtime_reasons": {k.value: v for k, v in DOWNTIME_REASON_LABELS.items()},
        "statuses": {k.value: v for k, v in EVENT_STATUS_LABELS.items()},
        "machine_statuses": {k.value: v for k, v in MACHINE_STATUS_LABELS.items()},
        "ownership_types": {k.value: v for k, v in OWNERSHIP_LABELS.items()},
    }


@router.get("/eligible-machines", response_model=List[MachineResponse])
def get_eligible_machines(
    event_type: EventType,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Machines that are legal targets for the event type in the current state"""
    return allocation_service.eligible_machines(db, event_type, allocation_service.supplier_scope(user))


@router.post("/validate")
def validate_draft(
    draft: AllocationEventDraft,
    is_edit: bool = False,
    _=Depends(get_current_user),
):
    """Dry-run the field rules; returns the first failure or ok"""
    error = validate(draft, is_edit=is_edit)
    if error is None:
        return {"valid": True, "error": None}
    return {"valid": False, "error": error.to_detail()}


@router.get("", response_model=List[AllocationEventResponse])
def list_events(
    status: Optional[EventStatus] = None,
    event_type: Optional[EventType] = None,
    machine_id: Optional[uuid.UUID] = None,
    site_id: Optional[uuid.UUID] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(100, le=1000),
    offset: int = 0,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """List events, newest first"""
    query = db.query(AllocationEvent)
    scope = allocation_service.supplier_scope(user)
    if scope is not None:
        query = query.join(Machine, AllocationEvent.machine_id == Machine.id).filter(Machine.supplier_id == scope)
    if status:
        query = query.filter(AllocationEvent.status == status.value)
    if event_type:
        query = query.filter(AllocationEvent.event_type == event_type.value)
    if machine_id:
        query = query.filter(AllocationEvent.machine_id == machine_id)
    if site_id:
        query = query.filter(AllocationEvent.site_id == site_id)
    if date_from:
        query = query.filter(AllocationEvent.event_date >= date_from)
    if date_to:
        query = query.filter(AllocationEvent.event_date <= date_to)
    return (
        query.order_by(AllocationEvent.event_date.desc(), AllocationEvent.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


@router.get("/{event_id}", response_model=AllocationEventResponse)
def get_event(
    event_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    try:
        return allocation_service.get_event(db, event_id)
    except AllocationError as err:
        raise _http_error(err)


@router.post("", response_model=AllocationEventResponse, status_code=201)
def create_event(
    draft: AllocationEventDraft,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_register_events")),
):
    """Register an event; it stays pending until approved"""
    try:
        return allocation_service.create_event(db, draft, user)
    except AllocationError as err:
        db.rollback()
        raise _http_error(err)


@router.put("/{event_id}", response_model=AllocationEventResponse)
def update_event(
    event_id: uuid.UUID,
    changes: AllocationEventUpdate,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_register_events", "can_approve_events")),
):
    """Correct a pending event"""
    try:
        return allocation_service.update_pending_event(db, event_id, changes, user)
    except AllocationError as err:
        db.rollback()
        raise _http_error(err)


@router.post("/{event_id}/approve", response_model=AllocationEventResponse)
def approve_event(
    event_id: uuid.UUID,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_approve_events")),
):
    try:
        return allocation_service.approve_event(db, event_id, user)
    except AllocationError as err:
        db.rollback()
        raise _http_error(err)


@router.post("/{event_id}/reject", response_model=AllocationEventResponse)
def reject_event(
    event_id: uuid.UUID,
    payload: EventRejectRequest,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_approve_events")),
):
    try:
        return allocation_service.reject_event(db, event_id, user, payload.rejection_reason)
    except AllocationError as err:
        db.rollback()
        raise _http_error(err)
