"""
Rental cost estimation from the allocation history.
"""
import math
from datetime import datetime, timedelta
from typing import Iterable, Optional

from ..schemas.events import EventType, OPENING_EVENT_TYPES, CLOSING_EVENT_TYPES
from .projector import as_utc, order_events, to_id, enum_value

SECONDS_PER_DAY = 60 * 60 * 24

# Days covered by one billing period, used to derive a daily rate and a fallback due date
BILLING_PERIOD_DAYS = {
    "daily": 1,
    "weekly": 7,
    "monthly": 30,
}


def ceil_days(start: datetime, end: datetime) -> int:
    seconds = (as_utc(end) - as_utc(start)).total_seconds()
    if seconds <= 0:
        return 0
    return int(math.ceil(seconds / SECONDS_PER_DAY))


def daily_rate(machine) -> float:
    """Owned machines cost nothing; rented ones derive a daily rate from their billing type."""
    if enum_value(getattr(machine, "ownership_type", None)) != "rented":
        return 0.0
    billing_type = enum_value(getattr(machine, "billing_type", None))
    rate = getattr(machine, f"{billing_type}_rate", None) if billing_type in BILLING_PERIOD_DAYS else None
    if not rate:
        return 0.0
    return float(rate) / BILLING_PERIOD_DAYS[billing_type]


def calculate_allocation_days(machine, history: Iterable, period_start: datetime,
                              period_end: Optional[datetime] = None) -> dict:
    """
    Allocation, downtime and billable days of ``machine`` within the period.

    Intervals are clipped to [period_start, period_end] and each one is
    rounded up to whole days. Only approved events for the machine count.
    """
    period_start = as_utc(period_start)
    period_end = as_utc(period_end) if period_end is not None else as_utc(datetime.utcnow())
    machine_id = str(machine.id)

    events = order_events([
        e for e in history
        if to_id(getattr(e, "machine_id", None)) == machine_id
        and enum_value(getattr(e, "status", None)) == "approved"
        and as_utc(e.event_date) <= period_end
    ])

    total_days = 0
    downtime_days = 0
    allocation_start = None
    downtime_start = None
    downtime_id = None

    def clipped(start: datetime, end: datetime) -> int:
        return ceil_days(max(start, period_start), min(end, period_end))

    for event in events:
        try:
            event_type = EventType(enum_value(event.event_type))
        except ValueError:
            continue
        event_date = as_utc(event.event_date)
        if event_type in (EventType.extension_attach, EventType.extension_detach) and getattr(event, "extension_id", None):
            continue

        if event_type in OPENING_EVENT_TYPES:
            if allocation_start is not None:
                total_days += clipped(allocation_start, event_date)
            allocation_start = event_date
            downtime_start = downtime_id = None
        elif event_type in CLOSING_EVENT_TYPES:
            if allocation_start is not None:
                total_days += clipped(allocation_start, event_date)
            if downtime_start is not None:
                downtime_days += clipped(downtime_start, event_date)
            allocation_start = downtime_start = downtime_id = None
        elif event_type == EventType.downtime_start and allocation_start is not None and downtime_start is None:
            downtime_start = event_date
            downtime_id = to_id(event.id)
        elif event_type == EventType.downtime_end and downtime_start is not None:
            if to_id(getattr(event, "corrects_event_id", None)) == downtime_id:
                downtime_days += clipped(downtime_start, event_date)
                downtime_start = downtime_id = None

    if allocation_start is not None:
        total_days += clipped(allocation_start, period_end)
    if downtime_start is not None:
        downtime_days += clipped(downtime_start, period_end)

    billable_days = max(0, total_days - downtime_days)
    rate = daily_rate(machine)

    return {
        "machine_id": machine_id,
        "ownership_type": enum_value(getattr(machine, "ownership_type", None)) or "owned",
        "billing_type": enum_value(getattr(machine, "billing_type", None)),
        "total_days": total_days,
        "downtime_days": downtime_days,
        "billable_days": billable_days,
        "daily_rate": round(rate, 2),
        "estimated_cost": round(billable_days * rate, 2),
    }


def rent_expiration_date(allocation_start: datetime, end_date: Optional[datetime],
                         billing_type: Optional[str]) -> Optional[datetime]:
    """Due date of an allocation: its end_date, else one billing period after the start."""
    if end_date is not None:
        return as_utc(end_date)
    if allocation_start is None or billing_type not in BILLING_PERIOD_DAYS:
        return None
    return as_utc(allocation_start) + timedelta(days=BILLING_PERIOD_DAYS[billing_type])
