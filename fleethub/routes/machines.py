import uuid
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from ..db import get_db
from ..auth.security import get_current_user, require_permissions, primary_role
from ..models.models import Machine, MachineType, Supplier, AllocationEvent
from ..schemas.fleet import (
    MachineTypeCreate,
    MachineTypeUpdate,
    MachineTypeResponse,
    MachineCreate,
    MachineUpdate,
    MachineResponse,
    OwnershipType,
    MachineStatus,
)
from ..schemas.allocations import MachineProjectionResponse
from ..services.audit import create_audit_log, compute_diff, snapshot
from ..services.allocation_service import machine_projection, supplier_scope, sync_machine_state

router = APIRouter(tags=["machines"])

MACHINE_AUDIT_FIELDS = (
    "unit_number", "machine_type_id", "ownership_type", "supplier_id", "billing_type",
    "daily_rate", "weekly_rate", "monthly_rate", "is_active", "notes",
)


def _check_machine_payload(db: Session, data: dict, current: Optional[Machine] = None):
    ownership = data.get("ownership_type", current.ownership_type if current else "owned")
    supplier_id = data.get("supplier_id", current.supplier_id if current else None)
    if getattr(ownership, "value", ownership) == OwnershipType.rented.value and not supplier_id:
        raise HTTPException(status_code=400, detail="Rented machines require a supplier")
    if supplier_id and not db.query(Supplier).filter(Supplier.id == supplier_id).first():
        raise HTTPException(status_code=400, detail="Supplier not found")
    machine_type_id = data.get("machine_type_id")
    if machine_type_id and not db.query(MachineType).filter(MachineType.id == machine_type_id).first():
        raise HTTPException(status_code=400, detail="Machine type not found")
    unit_number = data.get("unit_number")
    if unit_number:
        dup = db.query(Machine).filter(Machine.unit_number == unit_number)
        if current is not None:
            dup = dup.filter(Machine.id != current.id)
        if dup.first():
            raise HTTPException(status_code=409, detail="Unit number already in use")


def _enum_values(data: dict) -> dict:
    return {k: getattr(v, "value", v) for k, v in data.items()}


# ---------- MACHINE TYPES ----------
@router.get("/machine-types", response_model=List[MachineTypeResponse])
def list_machine_types(
    is_attachment: Optional[bool] = None,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    """List machine types"""
    query = db.query(MachineType)
    if is_attachment is not None:
        query = query.filter(MachineType.is_attachment == is_attachment)
    return query.order_by(MachineType.name.asc()).all()


@router.post("/machine-types", response_model=MachineTypeResponse)
def create_machine_type(
    payload: MachineTypeCreate,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_manage_machines")),
):
    """Create a machine type"""
    if db.query(MachineType).filter(MachineType.name == payload.name).first():
        raise HTTPException(status_code=409, detail="Machine type already exists")
    machine_type = MachineType(**payload.dict())
    db.add(machine_type)
    db.commit()
    db.refresh(machine_type)
    create_audit_log(db, "machine_type", machine_type.id, "CREATE", actor_id=user.id,
                     actor_role=primary_role(user), source="api", changes_json=payload.dict())
    return machine_type


@router.put("/machine-types/{type_id}", response_model=MachineTypeResponse)
def update_machine_type(
    type_id: uuid.UUID,
    payload: MachineTypeUpdate,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_manage_machines")),
):
    """Update a machine type"""
    machine_type = db.query(MachineType).filter(MachineType.id == type_id).first()
    if not machine_type:
        raise HTTPException(status_code=404, detail="Machine type not found")
    before = snapshot(machine_type, ("name", "icon", "is_attachment"))
    for key, value in payload.dict(exclude_unset=True).items():
        setattr(machine_type, key, value)
    db.commit()
    db.refresh(machine_type)
    create_audit_log(db, "machine_type", machine_type.id, "UPDATE", actor_id=user.id, actor_role=primary_role(user),
                     source="api", changes_json=compute_diff(before, snapshot(machine_type, ("name", "icon", "is_attachment"))))
    return machine_type


@router.delete("/machine-types/{type_id}")
def delete_machine_type(
    type_id: uuid.UUID,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_manage_machines")),
):
    """Delete a machine type that no machine uses"""
    machine_type = db.query(MachineType).filter(MachineType.id == type_id).first()
    if not machine_type:
        raise HTTPException(status_code=404, detail="Machine type not found")
    if db.query(Machine).filter(Machine.machine_type_id == type_id).count():
        raise HTTPException(status_code=409, detail="Machine type is in use")
    db.delete(machine_type)
    db.commit()
    create_audit_log(db, "machine_type", type_id, "DELETE", actor_id=user.id, actor_role=primary_role(user), source="api")
    return {"message": "Machine type deleted successfully"}


# ---------- MACHINES ----------
def _list_machines(db: Session, user, attachments: Optional[bool], status: Optional[MachineStatus],
                   ownership_type: Optional[OwnershipType], supplier_id: Optional[uuid.UUID],
                   site_id: Optional[uuid.UUID], search: Optional[str], include_inactive: bool):
    query = db.query(Machine).join(MachineType, Machine.machine_type_id == MachineType.id)
    if attachments is not None:
        query = query.filter(MachineType.is_attachment == attachments)
    if not include_inactive:
        query = query.filter(Machine.is_active == True)  # noqa: E712
    if status:
        query = query.filter(Machine.status == status.value)
    if ownership_type:
        query = query.filter(Machine.ownership_type == ownership_type.value)
    scope = supplier_scope(user)
    if scope is not None:
        query = query.filter(Machine.supplier_id == scope)
    elif supplier_id:
        query = query.filter(Machine.supplier_id == supplier_id)
    if site_id:
        query = query.filter(Machine.current_site_id == site_id)
    if search:
        like = f"%{search}%"
        query = query.filter(or_(Machine.unit_number.ilike(like), Machine.notes.ilike(like), MachineType.name.ilike(like)))
    return query.order_by(Machine.unit_number.asc()).all()


@router.get("/machines", response_model=List[MachineResponse])
def list_machines(
    status: Optional[MachineStatus] = None,
    ownership_type: Optional[OwnershipType] = None,
    supplier_id: Optional[uuid.UUID] = None,
    site_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    include_inactive: bool = False,
    include_extensions: bool = False,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """List machines (extensions excluded unless include_extensions)"""
    return _list_machines(db, user, None if include_extensions else False, status, ownership_type,
                          supplier_id, site_id, search, include_inactive)


@router.get("/extensions", response_model=List[MachineResponse])
def list_extensions(
    status: Optional[MachineStatus] = None,
    supplier_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """List extensions (machines whose type is an attachment)"""
    return _list_machines(db, user, True, status, None, supplier_id, None, search, include_inactive)


@router.get("/machines/{machine_id}", response_model=MachineResponse)
def get_machine(
    machine_id: uuid.UUID,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Get machine detail"""
    machine = db.query(Machine).filter(Machine.id == machine_id).first()
    scope = supplier_scope(user)
    if not machine or (scope is not None and machine.supplier_id != scope):
        raise HTTPException(status_code=404, detail="Machine not found")
    return machine


@router.get("/machines/{machine_id}/state", response_model=MachineProjectionResponse)
def get_machine_state(
    machine_id: uuid.UUID,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Projected allocation state of a machine, with integrity warnings"""
    machine = db.query(Machine).options(joinedload(Machine.supplier)).filter(Machine.id == machine_id).first()
    scope = supplier_scope(user)
    if not machine or (scope is not None and machine.supplier_id != scope):
        raise HTTPException(status_code=404, detail="Machine not found")
    return machine_projection(db, machine)


@router.post("/machines", response_model=MachineResponse)
def create_machine(
    payload: MachineCreate,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_manage_machines")),
):
    """Create a machine or extension"""
    data = payload.dict()
    _check_machine_payload(db, data)
    machine = Machine(**_enum_values(data), status=MachineStatus.available.value, created_by=user.id)
    db.add(machine)
    db.commit()
    db.refresh(machine)
    create_audit_log(db, "machine", machine.id, "CREATE", actor_id=user.id, actor_role=primary_role(user),
                     source="api", changes_json=snapshot(machine, MACHINE_AUDIT_FIELDS))
    return machine


@router.put("/machines/{machine_id}", response_model=MachineResponse)
def update_machine(
    machine_id: uuid.UUID,
    payload: MachineUpdate,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_manage_machines")),
):
    """Update administrative machine fields; status follows the allocation history"""
    machine = db.query(Machine).filter(Machine.id == machine_id).first()
    if not machine:
        raise HTTPException(status_code=404, detail="Machine not found")
    data = payload.dict(exclude_unset=True)
    _check_machine_payload(db, data, current=machine)

    before = snapshot(machine, MACHINE_AUDIT_FIELDS)
    for key, value in _enum_values(data).items():
        setattr(machine, key, value)
    machine.updated_at = datetime.now(timezone.utc)
    if "is_active" in data:
        sync_machine_state(db, machine)
    db.commit()
    db.refresh(machine)
    create_audit_log(db, "machine", machine.id, "UPDATE", actor_id=user.id, actor_role=primary_role(user),
                     source="api", changes_json=compute_diff(before, snapshot(machine, MACHINE_AUDIT_FIELDS)))
    return machine


@router.delete("/machines/{machine_id}")
def delete_machine(
    machine_id: uuid.UUID,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_manage_machines")),
):
    """Delete a machine (soft delete; history is kept)"""
    machine = db.query(Machine).filter(Machine.id == machine_id).first()
    if not machine:
        raise HTTPException(status_code=404, detail="Machine not found")
    machine.is_active = False
    machine.status = MachineStatus.inactive.value
    machine.updated_at = datetime.now(timezone.utc)
    db.commit()
    create_audit_log(db, "machine", machine.id, "DELETE", actor_id=user.id, actor_role=primary_role(user), source="api")
    return {"message": "Machine deleted successfully"}


@router.get("/machines/{machine_id}/events")
def get_machine_events(
    machine_id: uuid.UUID,
    limit: int = Query(200, le=1000),
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """All events that target the machine, newest first"""
    machine = db.query(Machine).filter(Machine.id == machine_id).first()
    scope = supplier_scope(user)
    if not machine or (scope is not None and machine.supplier_id != scope):
        raise HTTPException(status_code=404, detail="Machine not found")
    rows = (
        db.query(AllocationEvent)
        .filter(or_(AllocationEvent.machine_id == machine_id, AllocationEvent.extension_id == machine_id))
        .order_by(AllocationEvent.event_date.desc(), AllocationEvent.created_at.desc())
        .limit(limit)
        .all()
    )
    return [{
        "id": str(e.id),
        "event_type": e.event_type,
        "status": e.status,
        "event_date": e.event_date.isoformat() if e.event_date else None,
        "site_id": str(e.site_id) if e.site_id else None,
        "notes": e.notes,
    } for e in rows]
