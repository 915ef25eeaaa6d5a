"""
Domain errors for the allocation lifecycle.

Routes translate these into HTTPException; services raise them.
"""
from typing import Optional


class AllocationError(Exception):
    """Base class for allocation lifecycle errors."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict:
        return {"message": self.message}


class EventValidationError(AllocationError):
    """A required field is missing or a cross-field rule is violated."""
    status_code = 422

    def __init__(self, code: str, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.field = field

    def to_detail(self) -> dict:
        return {"code": self.code, "field": self.field, "message": self.message}

    def __eq__(self, other):
        if not isinstance(other, EventValidationError):
            return NotImplemented
        return (self.code, self.field, self.message) == (other.code, other.field, other.message)

    def __hash__(self):
        return hash((self.code, self.field, self.message))

    def __repr__(self):
        return f"EventValidationError(code={self.code!r}, field={self.field!r}, message={self.message!r})"


class EligibilityViolation(AllocationError):
    """The target equipment is not a legal target for the event type in its current state."""
    status_code = 409

    def __init__(self, event_type: str, machine_id: str, message: Optional[str] = None):
        super().__init__(message or f"Equipment {machine_id} is not eligible for {event_type}")
        self.event_type = event_type
        self.machine_id = machine_id

    def to_detail(self) -> dict:
        return {
            "code": "not_eligible",
            "event_type": self.event_type,
            "machine_id": self.machine_id,
            "message": self.message,
        }


class EventNotFound(AllocationError):
    status_code = 404

    def __init__(self, event_id: str):
        super().__init__("Event not found")
        self.event_id = event_id


class EquipmentNotFound(AllocationError):
    status_code = 404

    def __init__(self, machine_id: str):
        super().__init__("Machine not found")
        self.machine_id = machine_id


class ActionNotAllowed(AllocationError):
    status_code = 403


class EventStateError(AllocationError):
    """Approve/reject/edit attempted on an event that is no longer pending."""
    status_code = 409

    def __init__(self, event_id: str, status: str, action: str):
        super().__init__(f"Cannot {action} event with status '{status}'")
        self.event_id = event_id
        self.status = status
        self.action = action


class DataIntegrityWarning(object):
    """
    Advisory finding about malformed history. Never raised; the projector
    logs it and returns it alongside the best-effort state.
    """
    ORPHAN_DOWNTIME_END = "orphan_downtime_end"
    OVERLAPPING_DOWNTIME = "overlapping_downtime"
    OVERLAPPING_ALLOCATION = "overlapping_allocation"
    STALE_DOWNTIME = "stale_downtime"

    __slots__ = ("kind", "machine_id", "event_id", "message")

    def __init__(self, kind: str, machine_id: str, event_id: Optional[str], message: str):
        self.kind = kind
        self.machine_id = machine_id
        self.event_id = event_id
        self.message = message

    def as_dict(self) -> dict:
        return {
            "kind": self.kind,
            "machine_id": self.machine_id,
            "event_id": self.event_id,
            "message": self.message,
        }

    def __eq__(self, other):
        if not isinstance(other, DataIntegrityWarning):
            return NotImplemented
        return self.as_dict() == other.as_dict()

    def __hash__(self):
        return hash((self.kind, self.machine_id, self.event_id))

    def __repr__(self):
        return f"DataIntegrityWarning({self.kind!r}, machine_id={self.machine_id!r}, event_id={self.event_id!r})"
