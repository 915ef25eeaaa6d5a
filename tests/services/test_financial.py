"""Unit tests for rental day counting and cost estimation."""

import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from fleethub.services.financial import (
    calculate_allocation_days,
    ceil_days,
    daily_rate,
    rent_expiration_date,
)

pytestmark = pytest.mark.unit

DAY0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def at(days, hours=0):
    return DAY0 + timedelta(days=days, hours=hours)


def ev(event_type, when, machine_id="m1", status="approved", **fields):
    data = {
        "id": str(uuid.uuid4()),
        "event_type": event_type,
        "machine_id": machine_id,
        "status": status,
        "event_date": when,
        "created_at": when,
        "extension_id": None,
        "corrects_event_id": None,
    }
    data.update(fields)
    return SimpleNamespace(**data)


def rented(billing_type="monthly", **rates):
    data = {"id": "m1", "ownership_type": "rented", "billing_type": billing_type,
            "daily_rate": None, "weekly_rate": None, "monthly_rate": None}
    data.update(rates)
    return SimpleNamespace(**data)


OWNED = SimpleNamespace(id="m1", ownership_type="owned", billing_type=None)


class TestHelpers:
    def test_ceil_days_rounds_up(self):
        assert ceil_days(at(0), at(1, 12)) == 2
        assert ceil_days(at(0), at(3)) == 3

    def test_ceil_days_never_negative(self):
        assert ceil_days(at(3), at(1)) == 0

    def test_daily_rate_from_billing_period(self):
        assert daily_rate(rented("monthly", monthly_rate=3000)) == pytest.approx(100.0)
        assert daily_rate(rented("weekly", weekly_rate=700)) == pytest.approx(100.0)
        assert daily_rate(rented("daily", daily_rate=80)) == pytest.approx(80.0)

    def test_owned_or_unpriced_machines_cost_nothing(self):
        assert daily_rate(OWNED) == 0.0
        assert daily_rate(rented("monthly")) == 0.0


class TestCalculateAllocationDays:
    def test_closed_allocation(self):
        history = [ev("start_allocation", at(0)), ev("end_allocation", at(10))]
        result = calculate_allocation_days(rented(monthly_rate=3000), history, at(0), at(30))
        assert result["total_days"] == 10
        assert result["downtime_days"] == 0
        assert result["billable_days"] == 10
        assert result["estimated_cost"] == pytest.approx(1000.0)

    def test_downtime_is_not_billable(self):
        down = ev("downtime_start", at(3))
        history = [
            ev("start_allocation", at(0)),
            down,
            ev("downtime_end", at(5), corrects_event_id=down.id),
            ev("end_allocation", at(10)),
        ]
        result = calculate_allocation_days(rented(monthly_rate=3000), history, at(0), at(30))
        assert result["downtime_days"] == 2
        assert result["billable_days"] == 8
        assert result["estimated_cost"] == pytest.approx(800.0)

    def test_open_allocation_runs_to_period_end(self):
        history = [ev("start_allocation", at(0))]
        result = calculate_allocation_days(rented(monthly_rate=3000), history, at(0), at(4))
        assert result["total_days"] == 4

    def test_intervals_are_clipped_to_period(self):
        history = [ev("start_allocation", at(0)), ev("end_allocation", at(10))]
        result = calculate_allocation_days(rented(monthly_rate=3000), history, at(6), at(30))
        assert result["total_days"] == 4

    def test_transport_splits_allocations(self):
        history = [
            ev("start_allocation", at(0)),
            ev("transport_start", at(2)),
            ev("transport_arrival", at(3)),
            ev("end_allocation", at(5)),
        ]
        result = calculate_allocation_days(rented(monthly_rate=3000), history, at(0), at(30))
        assert result["total_days"] == 4

    def test_unapproved_and_foreign_events_are_ignored(self):
        history = [
            ev("start_allocation", at(0)),
            ev("end_allocation", at(2), status="pending"),
            ev("end_allocation", at(1), machine_id="m2"),
            ev("end_allocation", at(5)),
        ]
        result = calculate_allocation_days(rented(monthly_rate=3000), history, at(0), at(30))
        assert result["total_days"] == 5

    def test_owned_machine_has_zero_cost(self):
        history = [ev("start_allocation", at(0)), ev("end_allocation", at(3))]
        result = calculate_allocation_days(OWNED, history, at(0), at(30))
        assert result["total_days"] == 3
        assert result["daily_rate"] == 0.0
        assert result["estimated_cost"] == 0.0
        assert result["ownership_type"] == "owned"


class TestRentExpiration:
    def test_end_date_wins(self):
        assert rent_expiration_date(at(0), at(12), "monthly") == at(12)

    def test_falls_back_to_billing_period(self):
        assert rent_expiration_date(at(0), None, "weekly") == at(7)
        assert rent_expiration_date(at(0), None, "monthly") == at(30)

    def test_unknown_billing_type(self):
        assert rent_expiration_date(at(0), None, None) is None

    def test_naive_dates_are_utc(self):
        naive = at(0).replace(tzinfo=None)
        assert rent_expiration_date(naive, None, "daily") == at(1)
