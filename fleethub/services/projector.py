"""
Allocation state projector.

Derives the current allocation/downtime state of a piece of equipment from
its immutable event history. Pure: no database access, no clock. Events may
be ORM rows or any object exposing the AllocationEvent attributes.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

import pytz
import structlog

from ..schemas.events import (
    EventType,
    EventStatus,
    OPENING_EVENT_TYPES,
    CLOSING_EVENT_TYPES,
)
from .errors import DataIntegrityWarning

logger = structlog.get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=pytz.UTC)


@dataclass
class AttachedExtension:
    extension_id: str
    attach_event_id: str
    attached_at: datetime
    extension_unit_number: Optional[str] = None
    extension_type: Optional[str] = None


@dataclass
class ActiveDowntime:
    downtime_event_id: str
    machine_id: str
    downtime_start: datetime
    downtime_reason: Optional[str] = None
    downtime_description: Optional[str] = None
    site_id: Optional[str] = None
    site_title: Optional[str] = None


@dataclass
class ActiveAllocation:
    allocation_event_id: str
    machine_id: str
    allocation_start: datetime
    site_id: Optional[str] = None
    site_title: Optional[str] = None
    construction_type: Optional[str] = None
    lot_building_number: Optional[str] = None
    end_date: Optional[datetime] = None
    is_in_downtime: bool = False
    current_downtime_event_id: Optional[str] = None
    current_downtime_reason: Optional[str] = None
    current_downtime_start: Optional[datetime] = None
    attached_extensions: List[AttachedExtension] = field(default_factory=list)


@dataclass
class Projection:
    machine_id: str
    active_allocation: Optional[ActiveAllocation] = None
    active_downtime: Optional[ActiveDowntime] = None
    in_transit: bool = False
    attached_extensions: List[AttachedExtension] = field(default_factory=list)
    warnings: List[DataIntegrityWarning] = field(default_factory=list)

    @property
    def status(self) -> str:
        """Machine status column value for this state"""
        if self.active_downtime is not None:
            return "maintenance"
        if self.active_allocation is not None:
            return "allocated"
        if self.in_transit:
            return "in_transit"
        return "available"

    @property
    def current_site_id(self) -> Optional[str]:
        return self.active_allocation.site_id if self.active_allocation else None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken as UTC (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=pytz.UTC)
    return value.astimezone(pytz.UTC)


def to_id(value) -> Optional[str]:
    return str(value) if value is not None else None


def enum_value(value):
    if isinstance(value, Enum):
        return value.value
    return value


def _event_type(event) -> Optional[EventType]:
    try:
        return EventType(enum_value(getattr(event, "event_type", None)))
    except ValueError:
        return None


def _site_title(event) -> Optional[str]:
    site = getattr(event, "site", None)
    if site is not None:
        return getattr(site, "title", None)
    return getattr(event, "site_title", None)


def order_events(history: Iterable) -> list:
    """
    Chronological order used everywhere: event_date, then created_at, then the
    position in the supplied history. On equal keys the later one wins.
    """
    indexed = list(enumerate(history))
    indexed.sort(key=lambda pair: (
        as_utc(pair[1].event_date) or _EPOCH,
        as_utc(getattr(pair[1], "created_at", None)) or _EPOCH,
        pair[0],
    ))
    return [event for _, event in indexed]


def _relevant_events(equipment_id: str, history: Iterable, as_of: Optional[datetime]) -> list:
    cutoff = as_utc(as_of)
    selected = []
    for event in history:
        if to_id(getattr(event, "machine_id", None)) != equipment_id:
            continue
        if enum_value(getattr(event, "status", None)) != EventStatus.approved.value:
            continue
        if getattr(event, "event_date", None) is None:
            continue
        if cutoff is not None and as_utc(event.event_date) > cutoff:
            continue
        selected.append(event)
    return order_events(selected)


def project(equipment_id, history: Iterable, as_of: Optional[datetime] = None) -> Projection:
    """
    Project the current state of one piece of equipment.

    Only approved events for ``equipment_id`` count. When ``as_of`` is given,
    events dated after it are ignored. Malformed history never raises: each
    anomaly becomes a DataIntegrityWarning and the most recent event wins.
    """
    machine_id = str(equipment_id)
    events = _relevant_events(machine_id, history, as_of)
    result = Projection(machine_id=machine_id)

    opening = None
    open_downtimes: Dict[str, object] = {}  # insertion order == chronological order
    attached: Dict[str, AttachedExtension] = {}

    def warn(kind: str, event, message: str):
        result.warnings.append(DataIntegrityWarning(kind, machine_id, to_id(getattr(event, "id", None)), message))

    def drop_open_downtimes(reason: str):
        for downtime_id, downtime in open_downtimes.items():
            warn(DataIntegrityWarning.STALE_DOWNTIME, downtime, f"Downtime {downtime_id} left open by {reason}")
        open_downtimes.clear()

    for event in events:
        event_type = _event_type(event)
        if event_type is None:
            continue
        event_id = to_id(getattr(event, "id", None))
        extension_id = to_id(getattr(event, "extension_id", None))

        if event_type in (EventType.extension_attach, EventType.extension_detach) and extension_id:
            # Parent machine attaching/removing an extension; no allocation change
            if event_type == EventType.extension_attach:
                if extension_id not in attached:
                    extension = getattr(event, "extension", None)
                    extension_type = getattr(extension, "machine_type", None)
                    attached[extension_id] = AttachedExtension(
                        extension_id=extension_id,
                        attach_event_id=event_id,
                        attached_at=as_utc(event.event_date),
                        extension_unit_number=getattr(extension, "unit_number", None),
                        extension_type=getattr(extension_type, "name", None),
                    )
            else:
                attached.pop(extension_id, None)
            continue

        if event_type in OPENING_EVENT_TYPES:
            if opening is not None:
                warn(
                    DataIntegrityWarning.OVERLAPPING_ALLOCATION,
                    event,
                    f"Allocation {event_id} opened while {to_id(opening.id)} was still open",
                )
            drop_open_downtimes(f"new allocation {event_id}")
            opening = event
            # Any opening event puts the equipment on a site
            result.in_transit = False
        elif event_type in CLOSING_EVENT_TYPES:
            drop_open_downtimes(f"{event_type.value} {event_id}")
            opening = None
            if event_type == EventType.transport_start:
                result.in_transit = True
        elif event_type == EventType.downtime_start:
            if opening is None:
                continue
            if open_downtimes:
                warn(
                    DataIntegrityWarning.OVERLAPPING_DOWNTIME,
                    event,
                    f"Downtime {event_id} started while {list(open_downtimes)[-1]} was still open",
                )
            open_downtimes[event_id] = event
        elif event_type == EventType.downtime_end:
            corrects = to_id(getattr(event, "corrects_event_id", None))
            if corrects is None or corrects not in open_downtimes:
                warn(
                    DataIntegrityWarning.ORPHAN_DOWNTIME_END,
                    event,
                    f"downtime_end {event_id} does not reference an open downtime (corrects_event_id={corrects})",
                )
                continue
            del open_downtimes[corrects]
        # request_allocation, extension_detach of the extension itself: no state change

    result.attached_extensions = list(attached.values())

    if opening is not None:
        allocation = ActiveAllocation(
            allocation_event_id=to_id(opening.id),
            machine_id=machine_id,
            allocation_start=as_utc(opening.event_date),
            site_id=to_id(getattr(opening, "site_id", None)),
            site_title=_site_title(opening),
            construction_type=enum_value(getattr(opening, "construction_type", None)),
            lot_building_number=getattr(opening, "lot_building_number", None),
            end_date=as_utc(getattr(opening, "end_date", None)),
            attached_extensions=list(result.attached_extensions),
        )
        if open_downtimes:
            downtime = list(open_downtimes.values())[-1]
            result.active_downtime = ActiveDowntime(
                downtime_event_id=to_id(downtime.id),
                machine_id=machine_id,
                downtime_start=as_utc(downtime.event_date),
                downtime_reason=enum_value(getattr(downtime, "downtime_reason", None)),
                downtime_description=getattr(downtime, "downtime_description", None),
                site_id=allocation.site_id,
                site_title=allocation.site_title,
            )
            allocation.is_in_downtime = True
            allocation.current_downtime_event_id = result.active_downtime.downtime_event_id
            allocation.current_downtime_reason = result.active_downtime.downtime_reason
            allocation.current_downtime_start = result.active_downtime.downtime_start
        result.active_allocation = allocation

    for warning in result.warnings:
        logger.warning("projection_integrity_warning", **warning.as_dict())

    return result


def project_fleet(history: Iterable, equipment_ids: Optional[Iterable] = None,
                  as_of: Optional[datetime] = None) -> Dict[str, Projection]:
    """Project every machine referenced by ``history`` (or the given ids) in one pass over the data."""
    by_machine: Dict[str, list] = {}
    for event in history:
        machine_id = to_id(getattr(event, "machine_id", None))
        if machine_id is None:
            continue
        by_machine.setdefault(machine_id, []).append(event)

    ids = [str(i) for i in equipment_ids] if equipment_ids is not None else list(by_machine)
    return {machine_id: project(machine_id, by_machine.get(machine_id, []), as_of) for machine_id in ids}


def extension_parents(history: Iterable) -> Dict[str, str]:
    """
    Machine each extension is currently attached to, keyed by extension id.

    Only approved parent-attach/detach events (those carrying an
    ``extension_id``) count. A detach only releases the extension from the
    machine it was attached to.
    """
    parents: Dict[str, str] = {}
    relevant = [
        event for event in history
        if getattr(event, "extension_id", None) is not None
        and enum_value(getattr(event, "status", None)) == EventStatus.approved.value
    ]
    for event in order_events(relevant):
        event_type = _event_type(event)
        extension_id = to_id(event.extension_id)
        machine_id = to_id(getattr(event, "machine_id", None))
        if event_type == EventType.extension_attach:
            parents[extension_id] = machine_id
        elif event_type == EventType.extension_detach and parents.get(extension_id) == machine_id:
            del parents[extension_id]
    return parents


def active_allocations(projections: Iterable[Projection]) -> List[ActiveAllocation]:
    return [p.active_allocation for p in projections if p.active_allocation is not None]


def active_downtimes(projections: Iterable[Projection]) -> List[ActiveDowntime]:
    return [p.active_downtime for p in projections if p.active_downtime is not None]


def in_transit_ids(projections: Iterable[Projection]) -> set:
    return {p.machine_id for p in projections if p.in_transit}
