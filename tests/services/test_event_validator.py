"""Unit tests for draft event validation (first failing rule wins)."""

import uuid
from datetime import datetime, timezone

import pytest

from fleethub.schemas.events import AllocationEventDraft, EventType
from fleethub.services.errors import EventValidationError
from fleethub.services.event_validator import validate

pytestmark = pytest.mark.unit

NOW = datetime(2024, 5, 2, 9, 0, tzinfo=timezone.utc)
DOC = str(uuid.uuid4())


def draft(event_type, **fields):
    data = {
        "event_type": event_type,
        "event_date": NOW,
        "machine_id": "m1",
        "site_id": "s1",
        "end_date": NOW,
        "documents": [DOC],
    }
    data.update(fields)
    return data


def code(result):
    return result.code if result is not None else None


class TestRequiredFields:
    def test_valid_start_allocation(self):
        assert validate(draft("start_allocation")) is None

    def test_event_date_checked_first(self):
        result = validate(draft("start_allocation", event_date=None, machine_id=None))
        assert result == EventValidationError("event_date_required", "Data do evento obrigatória", "event_date")

    def test_machine_required(self):
        result = validate(draft("end_allocation", machine_id=None))
        assert result.code == "machine_required"
        assert result.message == "Máquina obrigatória"

    def test_extension_attach_asks_for_extension(self):
        result = validate(draft("extension_attach", machine_id=""))
        assert result.code == "extension_required"
        assert result.message == "Extensão obrigatória"

    def test_request_allocation_needs_supplier_then_type(self):
        base = draft("request_allocation", machine_id=None)
        assert validate(base).message == "Fornecedor obrigatório"
        assert validate(dict(base, supplier_id="sup")).message == "Tipo de máquina obrigatório"
        assert validate(dict(base, supplier_id="sup", machine_type_id="type")) is None

    @pytest.mark.parametrize("event_type", ["start_allocation", "request_allocation", "extension_attach", "transport_arrival"])
    def test_site_required(self, event_type):
        result = validate(draft(event_type, site_id=None, supplier_id="sup", machine_type_id="type"))
        assert result.code == "site_required"
        assert result.message == "Jobsite obrigatório"

    def test_transport_start_does_not_need_site(self):
        assert validate(draft("transport_start", site_id=None, end_date=None, documents=[])) is None

    @pytest.mark.parametrize("event_type", ["start_allocation", "request_allocation", "extension_attach"])
    def test_due_date_required(self, event_type):
        result = validate(draft(event_type, end_date=None, supplier_id="sup", machine_type_id="type"))
        assert result.message == "Data de vencimento obrigatória"

    def test_transport_arrival_does_not_need_due_date(self):
        assert validate(draft("transport_arrival", end_date=None)) is None


class TestCrossFieldRules:
    def test_lot_number_required(self):
        result = validate(draft("start_allocation", construction_type="lot", lot_building_number="  "))
        assert result.code == "lot_building_number_required"
        assert result.message == "Número do lote obrigatório"

    def test_building_number_required(self):
        result = validate(draft("start_allocation", construction_type="building"))
        assert result.message == "Número do prédio obrigatório"

    def test_construction_number_given(self):
        assert validate(draft("start_allocation", construction_type="lot", lot_building_number="7")) is None

    def test_downtime_reason_required(self):
        result = validate(draft("downtime_start", documents=[]))
        assert result.code == "downtime_reason_required"
        assert result.message == "Motivo da parada obrigatório"

    def test_downtime_start_with_reason(self):
        assert validate(draft("downtime_start", downtime_reason="preventive", documents=[])) is None


class TestDocuments:
    @pytest.mark.parametrize("event_type", ["start_allocation", "end_allocation", "extension_attach", "downtime_end", "transport_arrival"])
    def test_document_required_for_new_events(self, event_type):
        result = validate(draft(event_type, documents=[]))
        assert result.code == "document_required"
        assert result.message == "Anexe ao menos um documento para este tipo de evento"

    def test_document_rule_skipped_on_edit(self):
        assert validate(draft("end_allocation", documents=[]), is_edit=True) is None

    @pytest.mark.parametrize("event_type", ["downtime_start", "transport_start", "extension_detach"])
    def test_types_without_documents(self, event_type):
        assert code(validate(draft(event_type, documents=[], downtime_reason="corrective"))) is None


class TestDraftModel:
    def test_accepts_pydantic_draft(self):
        model = AllocationEventDraft(
            event_type=EventType.downtime_start,
            machine_id=uuid.uuid4(),
            event_date=NOW,
            downtime_reason="",
        )
        assert validate(model).code == "downtime_reason_required"

    def test_blank_lot_number_is_normalised(self):
        model = AllocationEventDraft(
            event_type="start_allocation",
            machine_id=uuid.uuid4(),
            site_id=uuid.uuid4(),
            event_date=NOW,
            end_date=NOW,
            construction_type="building",
            lot_building_number="",
            documents=[uuid.uuid4()],
        )
        assert model.lot_building_number is None
        assert validate(model).message == "Número do prédio obrigatório"

    def test_to_detail(self):
        result = validate(draft("end_allocation", machine_id=None))
        assert result.to_detail() == {"code": "machine_required", "field": "machine_id", "message": "Máquina obrigatória"}
        assert result.status_code == 422
