"""Allocation event lifecycle through the API: register, approve, project."""

import uuid

import pytest

from fleethub.models.models import AllocationEvent, Machine


D1 = "2024-05-01T00:00:00Z"
D2 = "2024-05-03T00:00:00Z"
D3 = "2024-05-05T00:00:00Z"
D4 = "2024-05-11T00:00:00Z"
DUE = "2024-06-01T00:00:00Z"


@pytest.fixture
def register(client, operator_headers, document):
    def _register(event_type, machine, headers=None, with_document=True, **fields):
        payload = {
            "event_type": event_type,
            "machine_id": str(machine.id),
            "event_date": D1,
            "documents": [str(document.id)] if with_document else [],
        }
        payload.update(fields)
        return client.post("/events", json=payload, headers=headers or operator_headers)

    return _register


@pytest.fixture
def approve(client, admin_headers):
    def _approve(resp):
        assert resp.status_code == 201, resp.text
        approved = client.post(f"/events/{resp.json()['id']}/approve", headers=admin_headers)
        assert approved.status_code == 200, approved.text
        return approved.json()

    return _approve


@pytest.fixture
def allocated(register, approve, machine, site):
    return approve(register("start_allocation", machine, site_id=str(site.id), end_date=DUE,
                            construction_type="lot", lot_building_number="14"))


class TestRegister:
    def test_new_event_is_pending(self, client, register, machine, site, admin_headers):
        resp = register("start_allocation", machine, site_id=str(site.id), end_date=DUE)
        assert resp.status_code == 201
        assert resp.json()["status"] == "pending"
        # Pending events do not move the machine
        body = client.get(f"/machines/{machine.id}", headers=admin_headers).json()
        assert body["status"] == "available"

    def test_validation_error_shape(self, register, machine):
        resp = register("start_allocation", machine, end_date=DUE)
        assert resp.status_code == 422
        assert resp.json()["detail"] == {"code": "site_required", "field": "site_id", "message": "Jobsite obrigatório"}

    def test_document_required(self, register, machine, site):
        resp = register("start_allocation", machine, site_id=str(site.id), end_date=DUE, with_document=False)
        assert resp.status_code == 422
        assert resp.json()["detail"]["code"] == "document_required"

    def test_unknown_document(self, register, machine, site):
        resp = register("start_allocation", machine, site_id=str(site.id), end_date=DUE,
                        documents=[str(uuid.uuid4())])
        assert resp.status_code == 422
        assert resp.json()["detail"]["code"] == "document_not_found"

    def test_unknown_machine(self, client, register, site):
        ghost = type("Ghost", (), {"id": uuid.uuid4()})()
        resp = register("start_allocation", ghost, site_id=str(site.id), end_date=DUE)
        assert resp.status_code == 404

    def test_supplier_cannot_register(self, client, supplier, register, machine, site, user_factory, headers_for):
        user = user_factory("alfa", "supplier", supplier_id=supplier.id)
        resp = register("start_allocation", machine, headers=headers_for(user), site_id=str(site.id), end_date=DUE)
        assert resp.status_code == 403

    def test_dry_run_validation(self, client, operator_headers, machine):
        resp = client.post(
            "/events/validate",
            json={"event_type": "downtime_start", "machine_id": str(machine.id), "event_date": D1},
            headers=operator_headers,
        )
        assert resp.json() == {
            "valid": False,
            "error": {"code": "downtime_reason_required", "field": "downtime_reason",
                      "message": "Motivo da parada obrigatório"},
        }

    def test_labels(self, client, operator_headers):
        body = client.get("/events/labels", headers=operator_headers).json()
        assert body["event_types"]["downtime_start"] == "Início de Manutenção"
        assert len(body["event_types"]) == 9


class TestApproval:
    def test_approval_allocates_machine(self, client, allocated, machine, site, admin_headers):
        assert allocated["status"] == "approved"
        body = client.get(f"/machines/{machine.id}", headers=admin_headers).json()
        assert body["status"] == "allocated"
        assert body["current_site_id"] == str(site.id)

    def test_operator_cannot_approve(self, client, register, machine, site, operator_headers):
        resp = register("start_allocation", machine, site_id=str(site.id), end_date=DUE)
        assert client.post(f"/events/{resp.json()['id']}/approve", headers=operator_headers).status_code == 403

    def test_cannot_approve_twice(self, client, allocated, admin_headers):
        resp = client.post(f"/events/{allocated['id']}/approve", headers=admin_headers)
        assert resp.status_code == 409

    def test_second_allocation_is_rejected_at_registration(self, allocated, register, machine, other_site):
        resp = register("start_allocation", machine, site_id=str(other_site.id), end_date=DUE)
        assert resp.status_code == 409
        detail = resp.json()["detail"]
        assert detail["code"] == "not_eligible"
        assert detail["message"] == "Máquina já está alocada. Finalize a alocação atual primeiro."

    def test_competing_pending_allocations_only_one_approves(self, client, register, machine, site, other_site,
                                                           admin_headers):
        first = register("start_allocation", machine, site_id=str(site.id), end_date=DUE)
        second = register("start_allocation", machine, site_id=str(other_site.id), end_date=DUE)
        assert first.status_code == second.status_code == 201
        assert client.post(f"/events/{first.json()['id']}/approve", headers=admin_headers).status_code == 200
        assert client.post(f"/events/{second.json()['id']}/approve", headers=admin_headers).status_code == 409

    def test_reject_requires_reason(self, client, register, machine, site, admin_headers):
        resp = register("start_allocation", machine, site_id=str(site.id), end_date=DUE)
        event_id = resp.json()["id"]
        blank = client.post(f"/events/{event_id}/reject", json={"rejection_reason": " "}, headers=admin_headers)
        assert blank.status_code == 422
        rejected = client.post(f"/events/{event_id}/reject", json={"rejection_reason": "Data errada"},
                               headers=admin_headers)
        assert rejected.status_code == 200
        assert rejected.json()["status"] == "rejected"
        assert rejected.json()["rejection_reason"] == "Data errada"

    def test_edit_pending_event(self, client, register, machine, site, other_site, operator_headers):
        resp = register("start_allocation", machine, site_id=str(site.id), end_date=DUE)
        edited = client.put(f"/events/{resp.json()['id']}", json={"site_id": str(other_site.id)},
                            headers=operator_headers)
        assert edited.status_code == 200
        assert edited.json()["site_id"] == str(other_site.id)

    def test_approved_events_are_immutable(self, client, allocated, other_site, admin_headers):
        resp = client.put(f"/events/{allocated['id']}", json={"site_id": str(other_site.id)}, headers=admin_headers)
        assert resp.status_code == 409


class TestDowntime:
    def test_downtime_cycle(self, client, allocated, register, approve, machine, admin_headers):
        missing_reason = register("downtime_start", machine, event_date=D2, with_document=False)
        assert missing_reason.json()["detail"]["code"] == "downtime_reason_required"

        down = approve(register("downtime_start", machine, event_date=D2, downtime_reason="corrective",
                                with_document=False))
        assert client.get(f"/machines/{machine.id}", headers=admin_headers).json()["status"] == "maintenance"
        downtimes = client.get("/allocations/downtimes", headers=admin_headers).json()
        assert [d["downtime_event_id"] for d in downtimes] == [down["id"]]

        # corrects_event_id is filled from the open downtime
        end = approve(register("downtime_end", machine, event_date=D3))
        assert end["corrects_event_id"] == down["id"]
        assert client.get(f"/machines/{machine.id}", headers=admin_headers).json()["status"] == "allocated"
        assert client.get(f"/allocations/downtimes/{machine.id}", headers=admin_headers).json() is None

    def test_downtime_end_must_reference_open_downtime(self, allocated, register, approve, machine):
        approve(register("downtime_start", machine, event_date=D2, downtime_reason="preventive",
                         with_document=False))
        resp = register("downtime_end", machine, event_date=D3, corrects_event_id=allocated["id"])
        assert resp.status_code == 422
        assert resp.json()["detail"]["code"] == "corrects_event_mismatch"

    def test_downtime_needs_allocation(self, register, machine):
        resp = register("downtime_start", machine, downtime_reason="preventive", with_document=False)
        assert resp.status_code == 409


class TestTransportAndExtensions:
    def test_transport_between_sites(self, client, allocated, register, approve, machine, other_site, admin_headers):
        approve(register("transport_start", machine, event_date=D2, with_document=False))
        assert client.get(f"/machines/{machine.id}", headers=admin_headers).json()["status"] == "in_transit"

        eligible = client.get("/events/eligible-machines?event_type=transport_arrival", headers=admin_headers).json()
        assert [m["id"] for m in eligible] == [str(machine.id)]

        approve(register("transport_arrival", machine, event_date=D3, site_id=str(other_site.id)))
        body = client.get(f"/machines/{machine.id}", headers=admin_headers).json()
        assert body["status"] == "allocated"
        assert body["current_site_id"] == str(other_site.id)

    def test_arrival_requires_transit(self, register, machine, site):
        resp = register("transport_arrival", machine, site_id=str(site.id))
        assert resp.status_code == 409
        assert resp.json()["detail"]["message"] == "Máquina não está em trânsito"

    def test_extension_attach_only_for_extensions(self, register, approve, machine, bucket, site):
        resp = register("extension_attach", machine, site_id=str(site.id), end_date=DUE)
        assert resp.status_code == 409
        attached = approve(register("extension_attach", bucket, site_id=str(site.id), end_date=DUE))
        assert attached["status"] == "approved"

    def test_parent_attach_lists_extension(self, client, allocated, register, approve, machine, bucket, site,
                                           admin_headers):
        approve(register("extension_attach", machine, event_date=D2, extension_id=str(bucket.id),
                         site_id=str(site.id), end_date=DUE))
        state = client.get(f"/machines/{machine.id}/state", headers=admin_headers).json()
        assert state["active_allocation"]["allocation_event_id"] == allocated["id"]
        assert [e["extension_id"] for e in state["active_allocation"]["attached_extensions"]] == [str(bucket.id)]

    @pytest.fixture
    def second_machine(self, db, excavator_type):
        m = Machine(unit_number="ESC-002", machine_type_id=excavator_type.id, ownership_type="owned", status="available")
        db.add(m)
        db.commit()
        db.refresh(m)
        return m

    def test_extension_hangs_off_one_machine_at_a_time(self, register, approve, machine, second_machine, bucket, site):
        approve(register("extension_attach", machine, event_date=D2, extension_id=str(bucket.id),
                         site_id=str(site.id), end_date=DUE))
        resp = register("extension_attach", second_machine, event_date=D3, extension_id=str(bucket.id),
                        site_id=str(site.id), end_date=DUE)
        assert resp.status_code == 409
        assert resp.json()["detail"]["message"] == "Extensão já está anexada à máquina ESC-001"

    def test_detach_only_from_current_parent(self, register, approve, machine, second_machine, bucket, site):
        resp = register("extension_detach", machine, event_date=D2, extension_id=str(bucket.id))
        assert resp.status_code == 409
        assert resp.json()["detail"]["message"] == "Extensão não está anexada a nenhuma máquina"

        approve(register("extension_attach", machine, event_date=D2, extension_id=str(bucket.id),
                         site_id=str(site.id), end_date=DUE))
        resp = register("extension_detach", second_machine, event_date=D3, extension_id=str(bucket.id))
        assert resp.status_code == 409
        assert resp.json()["detail"]["message"] == (
            "Extensão está anexada à máquina ESC-001, não à máquina especificada"
        )

        approve(register("extension_detach", machine, event_date=D3, extension_id=str(bucket.id)))
        moved = register("extension_attach", second_machine, event_date=D4, extension_id=str(bucket.id),
                         site_id=str(site.id), end_date=DUE)
        assert moved.status_code == 201

    def test_conflicting_parent_attach_is_rechecked_on_approval(self, client, register, approve, machine,
                                                                 second_machine, bucket, site, admin_headers):
        first = register("extension_attach", machine, event_date=D2, extension_id=str(bucket.id),
                         site_id=str(site.id), end_date=DUE)
        second = register("extension_attach", second_machine, event_date=D2, extension_id=str(bucket.id),
                          site_id=str(site.id), end_date=DUE)
        approve(first)
        resp = client.post(f"/events/{second.json()['id']}/approve", headers=admin_headers)
        assert resp.status_code == 409


class TestReadModels:
    def test_active_allocations_with_summary(self, client, allocated, machine, site, admin_headers):
        body = client.get("/allocations/active", headers=admin_headers).json()
        assert body["summary"] == {"total_allocated": 1, "in_downtime": 0, "working": 1, "owned": 1, "rented": 0}
        row = body["allocations"][0]
        assert row["machine_unit_number"] == "ESC-001"
        assert row["site_title"] == site.title
        assert row["lot_building_number"] == "14"

    def test_eligible_machines_follow_state(self, client, allocated, machine, bucket, admin_headers):
        start = client.get("/events/eligible-machines?event_type=start_allocation", headers=admin_headers).json()
        end = client.get("/events/eligible-machines?event_type=end_allocation", headers=admin_headers).json()
        assert [m["unit_number"] for m in start] == ["CAC-100"]
        assert [m["unit_number"] for m in end] == ["ESC-001"]

    def test_end_allocation_frees_machine(self, client, allocated, register, approve, machine, site, admin_headers):
        approve(register("end_allocation", machine, event_date=D4))
        assert client.get(f"/machines/{machine.id}", headers=admin_headers).json()["status"] == "available"
        assert client.get(f"/sites/{site.id}/allocations", headers=admin_headers).json()["total_machines"] == 0

    def test_machine_history_report(self, client, allocated, machine, admin_headers):
        body = client.get(f"/reports/machine-history/{machine.id}", headers=admin_headers).json()
        assert [e["event_type"] for e in body["events"]] == ["start_allocation"]
        assert body["state"]["active_allocation"]["allocation_event_id"] == allocated["id"]

    def test_allocations_by_site_report(self, client, allocated, site, admin_headers):
        body = client.get("/reports/allocations", headers=admin_headers).json()
        assert [(g["site_title"], g["machines"]) for g in body] == [(site.title, 1)]

    def test_sync_repairs_status_columns(self, client, db, allocated, machine, admin_headers):
        db.query(Machine).filter(Machine.id == machine.id).update({"status": "available"})
        db.commit()
        assert client.post("/allocations/sync", headers=admin_headers).json()["updated"] == 1
        assert client.get(f"/machines/{machine.id}", headers=admin_headers).json()["status"] == "allocated"

        logs = client.get("/logs?entity_type=machine&action=SYNC", headers=admin_headers).json()
        assert [log["entity_id"] for log in logs] == [str(machine.id)]
        assert logs[0]["changes_json"]["status"] == {"before": "available", "after": "allocated"}
        assert logs[0]["integrity_valid"] is True

    def test_sync_without_drift_writes_no_audit(self, client, allocated, admin_headers):
        assert client.post("/allocations/sync", headers=admin_headers).json()["updated"] == 0
        assert client.get("/logs?entity_type=machine&action=SYNC", headers=admin_headers).json() == []

    def test_events_list_filters(self, client, db, allocated, machine, admin_headers):
        approved = client.get("/events?status=approved", headers=admin_headers).json()
        pending = client.get("/events?status=pending", headers=admin_headers).json()
        assert [e["id"] for e in approved] == [allocated["id"]]
        assert pending == []
        assert db.query(AllocationEvent).count() == 1


class TestRentedMachines:
    @pytest.fixture
    def rented_allocation(self, register, approve, rented_machine, site):
        return approve(register("start_allocation", rented_machine, site_id=str(site.id), end_date=DUE))

    def test_financial_calculation(self, client, rented_allocation, register, approve, rented_machine, admin_headers):
        approve(register("end_allocation", rented_machine, event_date=D4))
        resp = client.post(
            "/allocations/calculate",
            json={"machine_id": str(rented_machine.id), "start_date": D1, "end_date": "2024-05-31T00:00:00Z"},
            headers=admin_headers,
        )
        body = resp.json()
        assert body["total_days"] == 10
        assert body["billable_days"] == 10
        assert body["daily_rate"] == pytest.approx(100.0)
        assert body["estimated_cost"] == pytest.approx(1000.0)

    def test_operator_cannot_see_financials(self, client, rented_machine, operator_headers):
        resp = client.post("/allocations/calculate", json={"machine_id": str(rented_machine.id), "start_date": D1},
                           headers=operator_headers)
        assert resp.status_code == 403

    def test_rent_expiration_report(self, client, rented_allocation, rented_machine, admin_headers):
        items = client.get("/reports/rent-expiration?rented_only=true", headers=admin_headers).json()
        assert len(items) == 1
        assert items[0]["machine_unit_number"] == "ESC-900"
        assert items[0]["supplier_name"] == "Locadora Alfa"
        assert items[0]["is_overdue"] is True

    def test_dashboard_stats(self, client, rented_allocation, machine, register, admin_headers, site):
        register("start_allocation", machine, site_id=str(site.id), end_date=DUE)
        stats = client.get("/dashboard/stats", headers=admin_headers).json()
        assert stats["total_machines"] == 2
        assert stats["machines_by_status"] == {"allocated": 1, "available": 1}
        assert stats["rented_machines"] == 1
        assert stats["active_allocations"] == 1
        assert stats["pending_events"] == 1
        assert stats["expiring_rentals"] == 1

    def test_supplier_sees_own_allocations(self, client, rented_allocation, allocated, supplier,
                                           user_factory, headers_for):
        user = user_factory("alfa", "supplier", supplier_id=supplier.id)
        body = client.get("/allocations/active", headers=headers_for(user)).json()
        assert [a["machine_unit_number"] for a in body["allocations"]] == ["ESC-900"]
