import uuid
from datetime import datetime
from typing import List, Optional, Mapping, TypeVar
from enum import Enum

from pydantic import BaseModel, field_validator


# Enums
class EventType(str, Enum):
    """Allocation event types. The string values are the wire contract."""
    request_allocation = "request_allocation"
    start_allocation = "start_allocation"
    end_allocation = "end_allocation"
    extension_attach = "extension_attach"
    extension_detach = "extension_detach"
    transport_start = "transport_start"
    transport_arrival = "transport_arrival"
    downtime_start = "downtime_start"
    downtime_end = "downtime_end"


class EventStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class ConstructionType(str, Enum):
    lot = "lot"
    building = "building"


class DowntimeReason(str, Enum):
    preventive = "preventive"
    corrective = "corrective"
    # legacy values still present in older history
    maintenance = "maintenance"
    defect = "defect"


T = TypeVar("T")


def ensure_exhaustive(table: Mapping[EventType, T], name: str) -> Mapping[EventType, T]:
    """Fail at import time when a per-event-type table misses a variant."""
    missing = set(EventType) - set(table)
    extra = set(table) - set(EventType)
    if missing or extra:
        raise RuntimeError(
            f"{name} must map every EventType exactly once "
            f"(missing={sorted(m.value for m in missing)}, extra={sorted(map(str, extra))})"
        )
    return table


EVENT_TYPE_LABELS = ensure_exhaustive({
    EventType.request_allocation: "Solicitação de Alocação",
    EventType.start_allocation: "Alocação de Máquina",
    EventType.end_allocation: "Fim de Alocação",
    EventType.extension_attach: "Alocação de Extensão",
    EventType.extension_detach: "Remoção de Extensão",
    EventType.transport_start: "Início de Transporte",
    EventType.transport_arrival: "Chegada em Obra",
    EventType.downtime_start: "Início de Manutenção",
    EventType.downtime_end: "Fim de Manutenção",
}, "EVENT_TYPE_LABELS")

DOWNTIME_REASON_LABELS = {
    DowntimeReason.preventive: "Preventiva",
    DowntimeReason.corrective: "Corretiva",
    DowntimeReason.maintenance: "Preventiva",
    DowntimeReason.defect: "Corretiva",
}

EVENT_STATUS_LABELS = {
    EventStatus.pending: "Pendente",
    EventStatus.approved: "Aprovado",
    EventStatus.rejected: "Rejeitado",
}

# Events that open an allocation at a site
OPENING_EVENT_TYPES = frozenset({
    EventType.start_allocation,
    EventType.extension_attach,
    EventType.transport_arrival,
})

# Events that close the current allocation
CLOSING_EVENT_TYPES = frozenset({
    EventType.end_allocation,
    EventType.transport_start,
})


# Event Schemas
class AllocationEventDraft(BaseModel):
    """Event payload as filled by the user; required-ness is checked by the event validator."""
    event_type: EventType
    machine_id: Optional[uuid.UUID] = None
    machine_type_id: Optional[uuid.UUID] = None
    supplier_id: Optional[uuid.UUID] = None
    extension_id: Optional[uuid.UUID] = None
    site_id: Optional[uuid.UUID] = None
    event_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    construction_type: Optional[ConstructionType] = None
    lot_building_number: Optional[str] = None
    downtime_reason: Optional[DowntimeReason] = None
    downtime_description: Optional[str] = None
    corrects_event_id: Optional[uuid.UUID] = None
    correction_description: Optional[str] = None
    notes: Optional[str] = None
    documents: List[uuid.UUID] = []

    @field_validator("lot_building_number", "notes", "downtime_description", "correction_description", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        # Form inputs arrive as "" when untouched
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("construction_type", "downtime_reason", mode="before")
    @classmethod
    def _blank_choice_to_none(cls, v):
        if v == "":
            return None
        return v


class AllocationEventUpdate(BaseModel):
    """Correction of a pending event"""
    machine_id: Optional[uuid.UUID] = None
    machine_type_id: Optional[uuid.UUID] = None
    supplier_id: Optional[uuid.UUID] = None
    extension_id: Optional[uuid.UUID] = None
    site_id: Optional[uuid.UUID] = None
    event_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    construction_type: Optional[ConstructionType] = None
    lot_building_number: Optional[str] = None
    downtime_reason: Optional[DowntimeReason] = None
    downtime_description: Optional[str] = None
    corrects_event_id: Optional[uuid.UUID] = None
    correction_description: Optional[str] = None
    notes: Optional[str] = None
    documents: Optional[List[uuid.UUID]] = None


class AllocationEventResponse(BaseModel):
    id: uuid.UUID
    event_type: EventType
    machine_id: Optional[uuid.UUID] = None
    machine_type_id: Optional[uuid.UUID] = None
    supplier_id: Optional[uuid.UUID] = None
    extension_id: Optional[uuid.UUID] = None
    site_id: Optional[uuid.UUID] = None
    event_date: datetime
    end_date: Optional[datetime] = None
    construction_type: Optional[ConstructionType] = None
    lot_building_number: Optional[str] = None
    downtime_reason: Optional[str] = None
    downtime_description: Optional[str] = None
    corrects_event_id: Optional[uuid.UUID] = None
    correction_description: Optional[str] = None
    status: EventStatus
    approved_by: Optional[uuid.UUID] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None
    documents: Optional[List[uuid.UUID]] = None
    created_by: Optional[uuid.UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class EventRejectRequest(BaseModel):
    rejection_reason: str


class EventLabelsResponse(BaseModel):
    event_types: dict
    downtime_reasons: dict
    statuses: dict
    machine_statuses: dict
    ownership_types: dict
