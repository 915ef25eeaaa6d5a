"""
Event eligibility filter: which equipment is a legal target for an event type
given the projected state of the fleet.
"""
from typing import Callable, Iterable, List, Optional

from ..schemas.events import EventType, ensure_exhaustive


class FleetState(object):
    """Id sets derived from the projections, shared by the eligibility rules."""

    def __init__(self, active_allocations: Iterable, active_downtimes: Iterable, in_transit_ids: Optional[Iterable] = None):
        self.allocated_ids = {str(a.machine_id) for a in active_allocations}
        self.downtime_ids = {str(d.machine_id) for d in active_downtimes}
        # None means no transit signal is available
        self.in_transit_ids = {str(i) for i in in_transit_ids} if in_transit_ids is not None else None


def is_extension(equipment) -> bool:
    machine_type = getattr(equipment, "machine_type", None)
    if machine_type is not None:
        return bool(getattr(machine_type, "is_attachment", False))
    return bool(getattr(equipment, "is_attachment", False))


def _unallocated(equipment, state: FleetState) -> bool:
    return str(equipment.id) not in state.allocated_ids


def _allocated(equipment, state: FleetState) -> bool:
    return str(equipment.id) in state.allocated_ids


def _allocated_and_working(equipment, state: FleetState) -> bool:
    equipment_id = str(equipment.id)
    return equipment_id in state.allocated_ids and equipment_id not in state.downtime_ids


def _in_downtime(equipment, state: FleetState) -> bool:
    return str(equipment.id) in state.downtime_ids


def _extension(equipment, state: FleetState) -> bool:
    return is_extension(equipment)


def _in_transit(equipment, state: FleetState) -> bool:
    if state.in_transit_ids is None:
        return True
    return str(equipment.id) in state.in_transit_ids


def _any(equipment, state: FleetState) -> bool:
    return True


ELIGIBILITY_RULES = ensure_exhaustive({
    EventType.request_allocation: _unallocated,
    EventType.start_allocation: _unallocated,
    EventType.end_allocation: _allocated,
    EventType.extension_attach: _extension,
    EventType.extension_detach: _any,
    EventType.transport_start: _any,
    EventType.transport_arrival: _in_transit,
    EventType.downtime_start: _allocated_and_working,
    EventType.downtime_end: _in_downtime,
}, "ELIGIBILITY_RULES")


INELIGIBLE_MESSAGES = ensure_exhaustive({
    EventType.request_allocation: "Máquina já está alocada",
    EventType.start_allocation: "Máquina já está alocada. Finalize a alocação atual primeiro.",
    EventType.end_allocation: "Máquina não está alocada",
    EventType.extension_attach: "O equipamento selecionado não é uma extensão",
    EventType.extension_detach: "Equipamento indisponível para remoção de extensão",
    EventType.transport_start: "Equipamento indisponível para transporte",
    EventType.transport_arrival: "Máquina não está em trânsito",
    EventType.downtime_start: "Máquina não está alocada ou já está em manutenção",
    EventType.downtime_end: "Máquina não está em manutenção",
}, "INELIGIBLE_MESSAGES")


def _rule(event_type) -> Callable:
    return ELIGIBILITY_RULES[EventType(event_type)]


def eligible_equipment(
    event_type,
    all_equipment: Iterable,
    active_allocations: Iterable,
    active_downtimes: Iterable,
    in_transit_ids: Optional[Iterable] = None,
) -> List:
    """
    Filter ``all_equipment`` down to the legal targets for ``event_type``.

    ``active_allocations``/``active_downtimes`` are anything carrying a
    ``machine_id``. Pass ``in_transit_ids`` to restrict transport_arrival to
    equipment on the road; without it every item is eligible.
    """
    rule = _rule(event_type)
    state = FleetState(active_allocations, active_downtimes, in_transit_ids)
    return [equipment for equipment in all_equipment if rule(equipment, state)]


def is_eligible(event_type, equipment, active_allocations: Iterable, active_downtimes: Iterable,
                in_transit_ids: Optional[Iterable] = None) -> bool:
    rule = _rule(event_type)
    return rule(equipment, FleetState(active_allocations, active_downtimes, in_transit_ids))
