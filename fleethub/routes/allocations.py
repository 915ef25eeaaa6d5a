import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import get_current_user, require_permissions
from ..models.models import Machine, AllocationEvent
from ..schemas.allocations import (
    ActiveAllocationsListResponse,
    ActiveDowntimeResponse,
    FinancialCalculationRequest,
    FinancialCalculationResponse,
    SyncResult,
)
from ..services import allocation_service
from ..services.errors import AllocationError
from ..services.financial import calculate_allocation_days

router = APIRouter(prefix="/allocations", tags=["allocations"])


@router.get("/active", response_model=ActiveAllocationsListResponse)
def get_active_allocations(
    site_id: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Active allocations derived from approved events, with summary counters"""
    rows = allocation_service.get_active_allocations(db, allocation_service.supplier_scope(user), site_id)
    return {"allocations": rows, "summary": allocation_service.summarize_allocations(rows)}


@router.get("/downtimes", response_model=List[ActiveDowntimeResponse])
def get_active_downtimes(
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    return allocation_service.get_active_downtimes(db, allocation_service.supplier_scope(user))


@router.get("/downtimes/{machine_id}", response_model=Optional[ActiveDowntimeResponse])
def get_machine_downtime(
    machine_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    """Open downtime of a machine, or null"""
    try:
        return allocation_service.get_active_downtime_by_machine(db, machine_id)
    except AllocationError as err:
        raise HTTPException(status_code=err.status_code, detail=err.to_detail())


@router.post("/calculate", response_model=FinancialCalculationResponse)
def calculate_costs(
    payload: FinancialCalculationRequest,
    db: Session = Depends(get_db),
    _=Depends(require_permissions("can_view_financial")),
):
    """Allocation/downtime/billable days and estimated rental cost over a period"""
    machine = db.query(Machine).filter(Machine.id == payload.machine_id).first()
    if not machine:
        raise HTTPException(status_code=404, detail="Machine not found")
    history = (
        db.query(AllocationEvent)
        .filter(AllocationEvent.machine_id == machine.id, AllocationEvent.status == "approved")
        .all()
    )
    return calculate_allocation_days(machine, history, payload.start_date, payload.end_date)


@router.post("/sync", response_model=SyncResult)
def sync_machines(
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_approve_events")),
):
    """Recompute every machine's status/site columns from the event history"""
    return allocation_service.sync_all_machine_states(db, user)
