import uuid
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from ..db import get_db
from ..config import settings
from ..auth.security import get_current_user, require_permissions
from ..models.models import Machine, MachineType, Site, AllocationEvent
from ..schemas.allocations import (
    DashboardStats,
    RentExpirationItem,
    SiteAllocationsReportItem,
)
from ..services import allocation_service
from ..services.financial import rent_expiration_date
from ..services.projector import as_utc

router = APIRouter(tags=["reports"])


def _rent_expirations(db: Session, supplier_id: Optional[uuid.UUID], rented_only: bool) -> List[dict]:
    now = datetime.now(timezone.utc)
    machines = {
        str(m.id): m
        for m in db.query(Machine).options(joinedload(Machine.supplier)).filter(Machine.is_active == True).all()  # noqa: E712
    }
    items = []
    for row in allocation_service.get_active_allocations(db, supplier_id):
        machine = machines.get(row["machine_id"])
        if machine is None or (rented_only and machine.ownership_type != "rented"):
            continue
        expiration = rent_expiration_date(row["allocation_start"], row["end_date"], machine.billing_type)
        if expiration is None:
            continue
        days_left = (expiration - now).days
        items.append({
            "allocation_event_id": row["allocation_event_id"],
            "machine_id": row["machine_id"],
            "machine_unit_number": machine.unit_number,
            "machine_type": row["machine_type"],
            "supplier_name": machine.supplier.name if machine.supplier else None,
            "billing_type": machine.billing_type,
            "site_id": row["site_id"],
            "site_title": row["site_title"],
            "allocation_start": row["allocation_start"],
            "expiration_date": expiration,
            "days_until_expiration": days_left,
            "is_overdue": expiration < now,
            "is_expiring_soon": expiration >= now and days_left <= settings.rent_expiration_warning_days,
        })
    # Earliest (overdue) first
    items.sort(key=lambda i: i["expiration_date"])
    return items


@router.get("/reports/allocations", response_model=List[SiteAllocationsReportItem])
def allocations_by_site(
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Active allocations grouped by jobsite"""
    groups = {}
    for row in allocation_service.get_active_allocations(db, allocation_service.supplier_scope(user)):
        group = groups.setdefault(row["site_id"], {
            "site_id": row["site_id"],
            "site_title": row["site_title"],
            "machines": 0,
            "in_downtime": 0,
            "allocations": [],
        })
        group["machines"] += 1
        group["in_downtime"] += 1 if row["is_in_downtime"] else 0
        group["allocations"].append(row)
    return sorted(groups.values(), key=lambda g: (g["site_title"] or "").lower())


@router.get("/reports/machine-history/{machine_id}")
def machine_history(
    machine_id: uuid.UUID,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Approved and pending events of a machine plus its projected state"""
    machine = db.query(Machine).options(joinedload(Machine.supplier)).filter(Machine.id == machine_id).first()
    scope = allocation_service.supplier_scope(user)
    if not machine or (scope is not None and machine.supplier_id != scope):
        raise HTTPException(status_code=404, detail="Machine not found")

    query = (
        db.query(AllocationEvent)
        .options(joinedload(AllocationEvent.site))
        .filter(AllocationEvent.machine_id == machine.id, AllocationEvent.status != "rejected")
    )
    if date_from:
        query = query.filter(AllocationEvent.event_date >= date_from)
    if date_to:
        query = query.filter(AllocationEvent.event_date <= date_to)
    events = query.order_by(AllocationEvent.event_date.asc(), AllocationEvent.created_at.asc()).all()

    return {
        "machine": {
            "id": str(machine.id),
            "unit_number": machine.unit_number,
            "machine_type": machine.machine_type.name if machine.machine_type else None,
            "ownership_type": machine.ownership_type,
            "supplier_name": machine.supplier.name if machine.supplier else None,
            "status": machine.status,
        },
        "events": [{
            "id": str(e.id),
            "event_type": e.event_type,
            "status": e.status,
            "event_date": as_utc(e.event_date).isoformat(),
            "end_date": as_utc(e.end_date).isoformat() if e.end_date else None,
            "site_id": str(e.site_id) if e.site_id else None,
            "site_title": e.site.title if e.site else None,
            "downtime_reason": e.downtime_reason,
            "corrects_event_id": str(e.corrects_event_id) if e.corrects_event_id else None,
            "notes": e.notes,
        } for e in events],
        "state": allocation_service.machine_projection(db, machine),
    }


@router.get("/reports/rent-expiration", response_model=List[RentExpirationItem])
def rent_expiration(
    rented_only: bool = False,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_view_financial", "can_view_dashboard")),
):
    """Due dates of active allocations, overdue first"""
    return _rent_expirations(db, allocation_service.supplier_scope(user), rented_only)


@router.get("/dashboard/stats", response_model=DashboardStats)
def dashboard_stats(
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_view_dashboard")),
):
    scope = allocation_service.supplier_scope(user)
    base = (
        db.query(Machine)
        .join(MachineType, Machine.machine_type_id == MachineType.id)
        .filter(Machine.is_active == True)  # noqa: E712
    )
    if scope is not None:
        base = base.filter(Machine.supplier_id == scope)
    machines_q = base.filter(MachineType.is_attachment == False)  # noqa: E712

    by_status = dict(
        machines_q.with_entities(Machine.status, func.count(Machine.id)).group_by(Machine.status).all()
    )
    owned = machines_q.filter(Machine.ownership_type == "owned").count()
    rented = machines_q.filter(Machine.ownership_type == "rented").count()
    extensions = base.filter(MachineType.is_attachment == True).count()  # noqa: E712

    allocations = allocation_service.get_active_allocations(db, scope)
    pending_q = db.query(AllocationEvent).filter(AllocationEvent.status == "pending")
    if scope is not None:
        pending_q = pending_q.join(Machine, AllocationEvent.machine_id == Machine.id).filter(Machine.supplier_id == scope)
    expiring = [
        i for i in _rent_expirations(db, scope, rented_only=True)
        if i["is_overdue"] or i["is_expiring_soon"]
    ]

    return {
        "total_machines": sum(by_status.values()),
        "machines_by_status": by_status,
        "owned_machines": owned,
        "rented_machines": rented,
        "total_extensions": extensions,
        "active_sites": db.query(Site).filter(Site.is_active == True).count(),  # noqa: E712
        "active_allocations": len(allocations),
        "active_downtimes": sum(1 for a in allocations if a["is_in_downtime"]),
        "pending_events": pending_q.count(),
        "expiring_rentals": len(expiring),
    }
