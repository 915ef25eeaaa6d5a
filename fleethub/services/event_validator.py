"""
Draft event validation.

Single pass, first failure wins: the client shows exactly one message at a
time. Messages are user-facing (pt-BR).
"""
from typing import Optional

from ..schemas.events import EventType
from .errors import EventValidationError

# Types that point at a jobsite (transport_start leaves a known site and is exempt)
SITE_REQUIRED_TYPES = frozenset({
    EventType.start_allocation,
    EventType.request_allocation,
    EventType.extension_attach,
    EventType.transport_arrival,
})

DUE_DATE_REQUIRED_TYPES = frozenset({
    EventType.start_allocation,
    EventType.request_allocation,
    EventType.extension_attach,
})

DOCUMENT_REQUIRED_TYPES = frozenset({
    EventType.start_allocation,
    EventType.end_allocation,
    EventType.extension_attach,
    EventType.downtime_end,
    EventType.transport_arrival,
})

LOT_BUILDING_MESSAGES = {
    "lot": "Número do lote obrigatório",
    "building": "Número do prédio obrigatório",
}


def _blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def _get(draft, name):
    if isinstance(draft, dict):
        return draft.get(name)
    return getattr(draft, name, None)


def _plain(value):
    return getattr(value, "value", value)


def validate(draft, is_edit: bool = False) -> Optional[EventValidationError]:
    """
    Return the first violated rule as an EventValidationError, or None.

    ``draft`` is an AllocationEventDraft, a dict, or any object with the
    event attributes. ``is_edit`` marks a correction of an existing event;
    the document rule only applies to new events.
    """
    event_type = EventType(_plain(_get(draft, "event_type")))

    if _blank(_get(draft, "event_date")):
        return EventValidationError("event_date_required", "Data do evento obrigatória", "event_date")

    if event_type == EventType.request_allocation:
        if _blank(_get(draft, "supplier_id")):
            return EventValidationError("supplier_required", "Fornecedor obrigatório", "supplier_id")
        if _blank(_get(draft, "machine_type_id")):
            return EventValidationError("machine_type_required", "Tipo de máquina obrigatório", "machine_type_id")
    elif _blank(_get(draft, "machine_id")):
        if event_type == EventType.extension_attach:
            return EventValidationError("extension_required", "Extensão obrigatória", "machine_id")
        return EventValidationError("machine_required", "Máquina obrigatória", "machine_id")

    if event_type in SITE_REQUIRED_TYPES and _blank(_get(draft, "site_id")):
        return EventValidationError("site_required", "Jobsite obrigatório", "site_id")

    if event_type in DUE_DATE_REQUIRED_TYPES and _blank(_get(draft, "end_date")):
        return EventValidationError("end_date_required", "Data de vencimento obrigatória", "end_date")

    construction_type = _plain(_get(draft, "construction_type"))
    if not _blank(construction_type) and _blank(_get(draft, "lot_building_number")):
        message = LOT_BUILDING_MESSAGES.get(construction_type, "Número do lote/prédio obrigatório")
        return EventValidationError("lot_building_number_required", message, "lot_building_number")

    if event_type == EventType.downtime_start and _blank(_plain(_get(draft, "downtime_reason"))):
        return EventValidationError("downtime_reason_required", "Motivo da parada obrigatório", "downtime_reason")

    if event_type in DOCUMENT_REQUIRED_TYPES and not is_edit and not _get(draft, "documents"):
        return EventValidationError(
            "document_required",
            "Anexe ao menos um documento para este tipo de evento",
            "documents",
        )

    return None
