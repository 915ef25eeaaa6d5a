"""
Allocation event store.

Persists events as pending, approves/rejects them and keeps the denormalised
machine status columns in sync with the projection. Every write re-checks
eligibility against the approved history while holding a row lock on the
machine, so two users cannot both allocate the same free machine.
"""
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

import structlog
from sqlalchemy.orm import Session, joinedload

from ..models.models import AllocationEvent, Machine, FileObject, User
from ..schemas.events import (
    AllocationEventDraft,
    AllocationEventUpdate,
    EventStatus,
    EventType,
)
from ..auth.security import has_permission, primary_role, role_names
from .audit import create_audit_log, compute_diff, snapshot
from .eligibility import eligible_equipment, is_eligible, INELIGIBLE_MESSAGES
from .event_validator import validate
from .errors import (
    ActionNotAllowed,
    EligibilityViolation,
    EquipmentNotFound,
    EventNotFound,
    EventStateError,
    EventValidationError,
)
from .projector import (
    Projection,
    active_allocations,
    active_downtimes,
    as_utc,
    extension_parents,
    in_transit_ids,
    project,
    project_fleet,
)

logger = structlog.get_logger(__name__)

EVENT_FIELDS = (
    "event_type", "machine_id", "machine_type_id", "supplier_id", "extension_id", "site_id",
    "event_date", "end_date", "construction_type", "lot_building_number", "downtime_reason",
    "downtime_description", "corrects_event_id", "correction_description", "notes", "documents",
)


def _uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _value(value):
    return getattr(value, "value", value)


def supplier_scope(user: User) -> Optional[uuid.UUID]:
    """Supplier accounts only see machines of their own supplier."""
    names = role_names(user)
    if "supplier" in names and not ({"admin", "dev"} & set(names)):
        return user.supplier_id or uuid.UUID(int=0)
    return None


# History / projection helpers
def load_history(db: Session, machine_ids: Optional[List] = None) -> List[AllocationEvent]:
    """Approved events, oldest first, with site and extension eagerly loaded."""
    query = (
        db.query(AllocationEvent)
        .options(joinedload(AllocationEvent.site), joinedload(AllocationEvent.extension))
        .filter(AllocationEvent.status == EventStatus.approved.value)
    )
    if machine_ids is not None:
        query = query.filter(AllocationEvent.machine_id.in_([_uuid(m) for m in machine_ids]))
    return query.order_by(AllocationEvent.event_date.asc(), AllocationEvent.created_at.asc()).all()


def project_machine(db: Session, machine_id) -> Projection:
    return project(machine_id, load_history(db, [machine_id]))


def fleet_projections(db: Session, machines: Optional[List[Machine]] = None) -> Dict[str, Projection]:
    if machines is None:
        machines = db.query(Machine).all()
    return project_fleet(load_history(db), [m.id for m in machines])


def lock_machine(db: Session, machine_id) -> Machine:
    machine = (
        db.query(Machine)
        .filter(Machine.id == _uuid(machine_id))
        .with_for_update()
        .first()
    )
    if machine is None:
        raise EquipmentNotFound(str(machine_id))
    return machine


def _eligibility_target(db: Session, event_type: EventType, machine: Machine, extension_id) -> Machine:
    # Parent-attach: the extension, not the parent, must be an attachment
    if event_type == EventType.extension_attach and extension_id:
        return lock_machine(db, extension_id)
    return machine


def extension_parent(db: Session, extension_id) -> Optional[Machine]:
    """Machine the extension is currently attached to, or None."""
    history = (
        db.query(AllocationEvent)
        .filter(
            AllocationEvent.extension_id == _uuid(extension_id),
            AllocationEvent.status == EventStatus.approved.value,
        )
        .all()
    )
    parent_id = extension_parents(history).get(str(extension_id))
    if parent_id is None:
        return None
    return db.query(Machine).filter(Machine.id == _uuid(parent_id)).first()


def _check_extension_parent(db: Session, event_type: EventType, machine: Machine, extension_id) -> None:
    """An extension hangs off one machine at a time and is only detached from that machine."""
    parent = extension_parent(db, extension_id)
    if event_type == EventType.extension_attach:
        if parent is not None and parent.id != machine.id:
            raise EligibilityViolation(event_type.value, str(extension_id),
                                       f"Extensão já está anexada à máquina {parent.unit_number}")
        return
    if parent is None:
        raise EligibilityViolation(event_type.value, str(extension_id), "Extensão não está anexada a nenhuma máquina")
    if parent.id != machine.id:
        raise EligibilityViolation(
            event_type.value,
            str(extension_id),
            f"Extensão está anexada à máquina {parent.unit_number}, não à máquina especificada",
        )


def check_eligibility(db: Session, event_type: EventType, machine: Machine,
                      projection: Projection, extension_id=None) -> None:
    """Raise EligibilityViolation when ``machine`` is not a legal target in its projected state."""
    target = _eligibility_target(db, event_type, machine, extension_id)
    allocations = [projection.active_allocation] if projection.active_allocation else []
    downtimes = [projection.active_downtime] if projection.active_downtime else []
    in_transit = {projection.machine_id} if projection.in_transit else set()
    if target is not machine:
        # Extension rule only looks at the machine type
        allocations, downtimes = [], []
    if not is_eligible(event_type, target, allocations, downtimes, in_transit):
        raise EligibilityViolation(event_type.value, str(target.id), INELIGIBLE_MESSAGES[event_type])
    if extension_id and event_type in (EventType.extension_attach, EventType.extension_detach):
        _check_extension_parent(db, event_type, machine, extension_id)


def _resolve_downtime_reference(event_type: EventType, corrects_event_id, projection: Projection):
    """downtime_end must close the machine's open downtime; fill the reference when omitted."""
    if event_type != EventType.downtime_end:
        return corrects_event_id
    open_id = projection.active_downtime.downtime_event_id if projection.active_downtime else None
    if corrects_event_id is None:
        return _uuid(open_id) if open_id else None
    if open_id is None or str(corrects_event_id) != open_id:
        raise EventValidationError(
            "corrects_event_mismatch",
            "O fim de manutenção deve referenciar a manutenção em aberto desta máquina",
            "corrects_event_id",
        )
    return corrects_event_id


def _check_documents(db: Session, documents) -> List[str]:
    ids = [_uuid(d) for d in (documents or [])]
    if not ids:
        return []
    found = {row.id for row in db.query(FileObject.id).filter(FileObject.id.in_(ids)).all()}
    missing = [str(i) for i in ids if i not in found]
    if missing:
        raise EventValidationError("document_not_found", "Documento anexado não encontrado", "documents")
    return [str(i) for i in ids]


# Machine status sync
def sync_machine_state(db: Session, machine: Machine, projection: Optional[Projection] = None) -> bool:
    """Write the projected status/site onto the machine row. Returns True when something changed."""
    if projection is None:
        projection = project_machine(db, machine.id)
    status = projection.status if machine.is_active else "inactive"
    site_id = _uuid(projection.current_site_id)
    changed = machine.status != status or machine.current_site_id != site_id
    if changed:
        machine.status = status
        machine.current_site_id = site_id
        machine.updated_at = datetime.now(timezone.utc)
    return changed


def sync_all_machine_states(db: Session, user: Optional[User] = None) -> dict:
    """Re-project every machine, fix drifted status columns and audit each repaired row."""
    machines = db.query(Machine).all()
    projections = fleet_projections(db, machines)
    repaired = []
    for machine in machines:
        before = snapshot(machine, ("status", "current_site_id"))
        if sync_machine_state(db, machine, projections[str(machine.id)]):
            repaired.append((machine, before))
    db.commit()
    for machine, before in repaired:
        create_audit_log(
            db,
            entity_type="machine",
            entity_id=machine.id,
            action="SYNC",
            actor_id=user.id if user is not None else None,
            actor_role=primary_role(user) if user is not None else "system",
            source="api" if user is not None else "system",
            changes_json=compute_diff(before, snapshot(machine, ("status", "current_site_id"))),
        )
    logger.info("machine_states_synced", updated=len(repaired), total=len(machines))
    return {"updated": len(repaired), "total": len(machines)}


# Event store operations
def create_event(db: Session, draft: AllocationEventDraft, user: User) -> AllocationEvent:
    """Validate, check eligibility against the approved state and store the event as pending."""
    error = validate(draft)
    if error is not None:
        raise error

    event_type = EventType(draft.event_type)
    corrects_event_id = draft.corrects_event_id

    if draft.machine_id is not None:
        machine = lock_machine(db, draft.machine_id)
        if not machine.is_active:
            raise EligibilityViolation(event_type.value, str(machine.id), "Máquina inativa")
        projection = project_machine(db, machine.id)
        check_eligibility(db, event_type, machine, projection, draft.extension_id)
        corrects_event_id = _resolve_downtime_reference(event_type, corrects_event_id, projection)

    documents = _check_documents(db, draft.documents)

    event = AllocationEvent(
        event_type=event_type.value,
        machine_id=draft.machine_id,
        machine_type_id=draft.machine_type_id,
        supplier_id=draft.supplier_id,
        extension_id=draft.extension_id,
        site_id=draft.site_id,
        event_date=as_utc(draft.event_date),
        end_date=as_utc(draft.end_date),
        construction_type=_value(draft.construction_type),
        lot_building_number=draft.lot_building_number,
        downtime_reason=_value(draft.downtime_reason),
        downtime_description=draft.downtime_description,
        corrects_event_id=corrects_event_id,
        correction_description=draft.correction_description,
        notes=draft.notes,
        documents=documents,
        status=EventStatus.pending.value,
        created_by=user.id,
        created_at=datetime.now(timezone.utc),
    )
    db.add(event)
    db.commit()
    db.refresh(event)

    create_audit_log(
        db,
        entity_type="allocation_event",
        entity_id=event.id,
        action="CREATE",
        actor_id=user.id,
        actor_role=primary_role(user),
        source="api",
        context={
            "event_type": event.event_type,
            "machine_id": str(event.machine_id) if event.machine_id else None,
            "site_id": str(event.site_id) if event.site_id else None,
        },
    )
    logger.info("event_created", event_id=str(event.id), event_type=event.event_type,
                machine_id=str(event.machine_id) if event.machine_id else None)
    return event


def get_event(db: Session, event_id) -> AllocationEvent:
    event = db.query(AllocationEvent).filter(AllocationEvent.id == _uuid(event_id)).first()
    if event is None:
        raise EventNotFound(str(event_id))
    return event


def update_pending_event(db: Session, event_id, changes: AllocationEventUpdate, user: User) -> AllocationEvent:
    """Correct a pending event. The document rule is not re-applied to edits."""
    event = get_event(db, event_id)
    if event.status != EventStatus.pending.value:
        raise EventStateError(str(event.id), event.status, "edit")
    if str(event.created_by) != str(user.id) and not has_permission(user, "can_approve_events"):
        raise ActionNotAllowed("Only the author or an approver can edit a pending event")

    data = changes.dict(exclude_unset=True)
    before = snapshot(event, EVENT_FIELDS)
    merged = {f: getattr(event, f) for f in EVENT_FIELDS}
    merged.update(data)
    if merged.get("documents") is None:
        merged["documents"] = []
    draft = AllocationEventDraft(**merged)

    error = validate(draft, is_edit=True)
    if error is not None:
        raise error

    event_type = EventType(draft.event_type)
    corrects_event_id = draft.corrects_event_id
    if draft.machine_id is not None:
        machine = lock_machine(db, draft.machine_id)
        projection = project_machine(db, machine.id)
        check_eligibility(db, event_type, machine, projection, draft.extension_id)
        corrects_event_id = _resolve_downtime_reference(event_type, corrects_event_id, projection)

    if "documents" in data:
        data["documents"] = _check_documents(db, data["documents"])
    for key in ("event_date", "end_date"):
        if key in data:
            data[key] = as_utc(data[key])
    for key, value in data.items():
        setattr(event, key, _value(value))
    event.corrects_event_id = corrects_event_id
    event.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(event)

    create_audit_log(
        db,
        entity_type="allocation_event",
        entity_id=event.id,
        action="UPDATE",
        actor_id=user.id,
        actor_role=primary_role(user),
        source="api",
        changes_json=compute_diff(before, snapshot(event, EVENT_FIELDS)),
    )
    logger.info("event_updated", event_id=str(event.id))
    return event


def approve_event(db: Session, event_id, user: User) -> AllocationEvent:
    """Approve a pending event after re-checking eligibility under the machine lock."""
    event = get_event(db, event_id)
    if event.status != EventStatus.pending.value:
        raise EventStateError(str(event.id), event.status, "approve")

    machine = None
    event_type = EventType(event.event_type)
    if event.machine_id is not None:
        machine = lock_machine(db, event.machine_id)
        projection = project_machine(db, machine.id)
        check_eligibility(db, event_type, machine, projection, event.extension_id)
        event.corrects_event_id = _resolve_downtime_reference(event_type, event.corrects_event_id, projection)

    event.status = EventStatus.approved.value
    event.approved_by = user.id
    event.approved_at = datetime.now(timezone.utc)
    db.flush()

    if machine is not None:
        sync_machine_state(db, machine)
    db.commit()
    db.refresh(event)

    create_audit_log(
        db,
        entity_type="allocation_event",
        entity_id=event.id,
        action="APPROVE",
        actor_id=user.id,
        actor_role=primary_role(user),
        source="api",
        context={
            "event_type": event.event_type,
            "machine_id": str(event.machine_id) if event.machine_id else None,
            "machine_status": machine.status if machine is not None else None,
        },
    )
    logger.info("event_approved", event_id=str(event.id), event_type=event.event_type)
    return event


def reject_event(db: Session, event_id, user: User, reason: Optional[str]) -> AllocationEvent:
    if not reason or not reason.strip():
        raise EventValidationError("rejection_reason_required", "Motivo da rejeição obrigatório", "rejection_reason")
    event = get_event(db, event_id)
    if event.status != EventStatus.pending.value:
        raise EventStateError(str(event.id), event.status, "reject")

    event.status = EventStatus.rejected.value
    event.approved_by = user.id
    event.approved_at = datetime.now(timezone.utc)
    event.rejection_reason = reason.strip()
    db.commit()
    db.refresh(event)

    create_audit_log(
        db,
        entity_type="allocation_event",
        entity_id=event.id,
        action="REJECT",
        actor_id=user.id,
        actor_role=primary_role(user),
        source="api",
        context={"rejection_reason": event.rejection_reason},
    )
    logger.info("event_rejected", event_id=str(event.id))
    return event


# Read models
def _machine_descriptor(machine: Optional[Machine]) -> dict:
    if machine is None:
        return {}
    return {
        "machine_unit_number": machine.unit_number,
        "machine_type": machine.machine_type.name if machine.machine_type else None,
        "machine_ownership": machine.ownership_type,
        "machine_supplier_id": machine.supplier_id,
        "machine_supplier_name": machine.supplier.name if machine.supplier else None,
    }


def _scoped_machines(db: Session, supplier_id: Optional[uuid.UUID] = None) -> List[Machine]:
    query = db.query(Machine).options(joinedload(Machine.supplier)).filter(Machine.is_active == True)  # noqa: E712
    if supplier_id is not None:
        query = query.filter(Machine.supplier_id == supplier_id)
    return query.all()


def get_active_allocations(db: Session, supplier_id: Optional[uuid.UUID] = None,
                           site_id: Optional[uuid.UUID] = None) -> List[dict]:
    machines = _scoped_machines(db, supplier_id)
    by_id = {str(m.id): m for m in machines}
    projections = fleet_projections(db, machines)
    rows = []
    for machine_id, projection in projections.items():
        allocation = projection.active_allocation
        if allocation is None:
            continue
        if site_id is not None and allocation.site_id != str(site_id):
            continue
        row = asdict(allocation)
        row.update(_machine_descriptor(by_id.get(machine_id)))
        rows.append(row)
    rows.sort(key=lambda r: r["allocation_start"], reverse=True)
    return rows


def summarize_allocations(rows: List[dict]) -> dict:
    in_downtime = sum(1 for r in rows if r["is_in_downtime"])
    owned = sum(1 for r in rows if r.get("machine_ownership") == "owned")
    return {
        "total_allocated": len(rows),
        "in_downtime": in_downtime,
        "working": len(rows) - in_downtime,
        "owned": owned,
        "rented": len(rows) - owned,
    }


def get_active_downtimes(db: Session, supplier_id: Optional[uuid.UUID] = None) -> List[dict]:
    machines = _scoped_machines(db, supplier_id)
    by_id = {str(m.id): m for m in machines}
    rows = []
    for machine_id, projection in fleet_projections(db, machines).items():
        if projection.active_downtime is None:
            continue
        row = asdict(projection.active_downtime)
        row["machine_unit_number"] = by_id[machine_id].unit_number
        rows.append(row)
    rows.sort(key=lambda r: r["downtime_start"], reverse=True)
    return rows


def get_active_downtime_by_machine(db: Session, machine_id) -> Optional[dict]:
    machine = db.query(Machine).filter(Machine.id == _uuid(machine_id)).first()
    if machine is None:
        raise EquipmentNotFound(str(machine_id))
    projection = project_machine(db, machine.id)
    if projection.active_downtime is None:
        return None
    row = asdict(projection.active_downtime)
    row["machine_unit_number"] = machine.unit_number
    return row


def get_site_allocation_summary(db: Session, site_id) -> dict:
    rows = get_active_allocations(db, site_id=_uuid(site_id))
    in_downtime = sum(1 for r in rows if r["is_in_downtime"])
    return {
        "site_id": _uuid(site_id),
        "site_title": rows[0]["site_title"] if rows else None,
        "total_machines": len(rows),
        "machines_in_downtime": in_downtime,
        "machines_working": len(rows) - in_downtime,
        "allocations": rows,
    }


def machine_projection(db: Session, machine: Machine) -> dict:
    projection = project_machine(db, machine.id)
    allocation = asdict(projection.active_allocation) if projection.active_allocation else None
    if allocation is not None:
        allocation.update(_machine_descriptor(machine))
    downtime = asdict(projection.active_downtime) if projection.active_downtime else None
    if downtime is not None:
        downtime["machine_unit_number"] = machine.unit_number
    return {
        "machine_id": machine.id,
        "active_allocation": allocation,
        "active_downtime": downtime,
        "in_transit": projection.in_transit,
        "warnings": [w.as_dict() for w in projection.warnings],
    }


def eligible_machines(db: Session, event_type: EventType, supplier_id: Optional[uuid.UUID] = None) -> List[Machine]:
    """Active machines that are legal targets for ``event_type`` right now."""
    machines = _scoped_machines(db, supplier_id)
    projections = list(fleet_projections(db, machines).values())
    return eligible_equipment(
        event_type,
        machines,
        active_allocations(projections),
        active_downtimes(projections),
        in_transit_ids(projections),
    )
