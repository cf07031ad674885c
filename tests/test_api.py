"""
Tests for the HTTP API.

Tests cover:
- Property creation and rent-roll upload
- Document, resident and verification endpoints
- Discrepancy listing and CSV export
- Override request queue
- Error mapping to status codes
"""
import uuid
import pytest
from decimal import Decimal

from fastapi.testclient import TestClient

from compliance.database import get_db
from compliance.main import app
from compliance.models import ChangeLog, IncomeVerification, Resident

RENT_ROLL = {
    "snapshot_date": "2025-01-31",
    "filename": "maple-court-jan.csv",
    "rows": [
        {"unit": "101", "resident_name": "Maria Lopez", "declared_income": "$28,000.00",
         "lease_start": "07/01/2024", "lease_end": "06/30/2025", "rent": "1200"},
        {"unit": "102", "resident_name": "Sam Park", "declared_income": "31200",
         "lease_start": "01/01/2025", "lease_end": "12/31/2025", "rent": "950"},
        {"unit": "103"},
    ],
}

PAYSTUB = {
    "document_type": "PAYSTUB",
    "status": "COMPLETED",
    "gross_pay_amount": "1100.00",
    "pay_frequency": "bi-weekly",
    "file_path": "uploads/maria-paystub-1.pdf",
}


@pytest.fixture
def client(session_factory):
    """TestClient whose requests use the test database."""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def property_id(client):
    response = client.post("/api/properties", json={"name": "Maple Court", "address": "12 Elm St"})
    assert response.status_code == 201
    return response.json()["id"]


@pytest.fixture
def loaded(client, property_id):
    response = client.post(f"/api/properties/{property_id}/rent-rolls", json=RENT_ROLL)
    assert response.status_code == 201
    return property_id


def resident_id(session, name):
    return str(session.query(Resident).filter_by(name=name).one().id)


class TestProperties:
    def test_health(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_create_property(self, client):
        response = client.post("/api/properties", json={"name": "  Birch Row  "})

        assert response.status_code == 201
        assert response.json()["name"] == "Birch Row"

    def test_create_property_requires_name(self, client):
        response = client.post("/api/properties", json={"name": ""})

        assert response.status_code == 422

    def test_upload_rent_roll(self, client, property_id):
        response = client.post(f"/api/properties/{property_id}/rent-rolls", json=RENT_ROLL)

        assert response.status_code == 201
        data = response.json()
        assert data["stats"]["current_leases"] == 2
        assert data["stats"]["units_created"] == 3
        assert data["scenarios"] == {"101": "NEW_UNIT", "102": "NEW_UNIT", "103": "NEW_UNIT"}

    def test_out_of_order_upload_is_unprocessable(self, client, loaded):
        older = dict(RENT_ROLL, snapshot_date="2024-12-31")

        response = client.post(f"/api/properties/{loaded}/rent-rolls", json=older)

        assert response.status_code == 422
        assert "older" in response.json()["detail"]

    def test_unknown_property_is_404(self, client):
        response = client.get(f"/api/properties/{uuid.uuid4()}/verification-status")

        assert response.status_code == 404


class TestVerificationFlow:
    """Tests for verifying a household end to end."""

    def test_initial_status(self, client, loaded):
        response = client.get(f"/api/properties/{loaded}/verification-status")

        assert response.status_code == 200
        data = response.json()
        statuses = {u["unit_number"]: u["status"] for u in data["units"]}
        assert statuses == {
            "101": "In Progress - Finalize to Process",
            "102": "In Progress - Finalize to Process",
            "103": "Vacant",
        }
        assert data["summary"]["vacant"] == 1

    def test_add_document_and_finalize(self, client, session, loaded):
        maria = resident_id(session, "Maria Lopez")

        response = client.post(f"/api/residents/{maria}/documents", json=PAYSTUB)
        assert response.status_code == 201
        assert response.json()["status"] == "COMPLETED"

        response = client.post(f"/api/residents/{maria}/finalize")
        assert response.status_code == 200
        body = response.json()
        assert body["income_finalized"] is True
        assert Decimal(body["calculated_income"]) == Decimal("28600")

        data = client.get(f"/api/properties/{loaded}/verification-status").json()
        unit = next(u for u in data["units"] if u["unit_number"] == "101")
        assert unit["status"] == "Needs Investigation"
        assert Decimal(unit["verified_income_total"]) == Decimal("28600")

    def test_finalize_without_documents_conflicts(self, client, session, loaded):
        maria = resident_id(session, "Maria Lopez")

        response = client.post(f"/api/residents/{maria}/finalize")

        assert response.status_code == 409

    def test_no_income_attestation(self, client, session, loaded):
        sam = resident_id(session, "Sam Park")

        response = client.post(f"/api/residents/{sam}/no-income")

        assert response.status_code == 200
        assert response.json()["has_no_income"] is True

    def test_finalize_verification_not_ready_conflicts(self, client, session, loaded):
        verification_id = str(session.query(IncomeVerification).first().id)

        response = client.post(f"/api/verifications/{verification_id}/finalize")

        assert response.status_code == 409
        assert "residents not finalized" in response.json()["detail"]

    def test_delete_document_reopens_resident(self, client, session, loaded):
        maria = resident_id(session, "Maria Lopez")
        document = client.post(f"/api/residents/{maria}/documents", json=PAYSTUB).json()
        client.post(f"/api/residents/{maria}/finalize")

        response = client.delete(f"/api/documents/{document['id']}")

        assert response.status_code == 200
        body = response.json()
        assert body["income_finalized"] is False
        assert Decimal(body["calculated_income"]) == Decimal("0")

    def test_delete_unknown_document_is_404(self, client):
        response = client.delete(f"/api/documents/{uuid.uuid4()}")

        assert response.status_code == 404


class TestDiscrepancies:
    @pytest.fixture
    def flagged(self, client, session, loaded):
        maria = resident_id(session, "Maria Lopez")
        client.post(f"/api/residents/{maria}/documents", json=PAYSTUB)
        client.post(f"/api/residents/{maria}/finalize")
        return loaded, maria

    def test_list(self, client, flagged):
        property_id, maria = flagged

        response = client.get(f"/api/properties/{property_id}/income-discrepancies")

        assert response.status_code == 200
        rows = response.json()
        assert len(rows) == 1
        assert rows[0]["resident_id"] == maria
        assert rows[0]["scope"] == "WITHIN_LEASE"
        assert Decimal(rows[0]["discrepancy"]) == Decimal("600")

    def test_export(self, client, flagged):
        property_id, _ = flagged

        response = client.get(f"/api/properties/{property_id}/income-discrepancies/export")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        lines = response.text.strip().splitlines()
        assert lines[0].startswith("Property Name,Property Address,Unit Number")
        assert "Maria Lopez" in lines[1]

    def test_resolve_accept_verified(self, client, flagged):
        property_id, maria = flagged

        response = client.post("/api/income-discrepancies/resolve", json={
            "resident_id": maria,
            "resolution": "accept-verified",
            "decided_by": "alex",
        })

        assert response.status_code == 200
        assert Decimal(response.json()["declared_income"]) == Decimal("28600")
        assert client.get(f"/api/properties/{property_id}/income-discrepancies").json() == []


class TestOverrideQueue:
    def test_short_explanation_is_bad_request(self, client, session, loaded):
        maria = session.query(Resident).filter_by(name="Maria Lopez").one()

        response = client.post("/api/override-requests", json={
            "context": {
                "type": "VALIDATION_EXCEPTION",
                "unit_id": str(maria.lease.unit_id),
                "verification_id": str(maria.lease.active_verification.id),
            },
            "user_explanation": "please",
            "requester_id": "user-1",
        })

        assert response.status_code == 400

    def test_review_and_approve(self, client, session, loaded):
        maria = resident_id(session, "Maria Lopez")
        flagged = dict(PAYSTUB, status="NEEDS_REVIEW")
        client.post(f"/api/residents/{maria}/documents", json=flagged)

        queue = client.get("/api/admin/override-requests", params={"property_id": loaded}).json()
        assert [r["type"] for r in queue] == ["DOCUMENT_REVIEW"]

        status = client.get(f"/api/properties/{loaded}/verification-status").json()
        unit = next(u for u in status["units"] if u["unit_number"] == "101")
        assert unit["status"] == "Waiting for Admin Review"

        response = client.patch(f"/api/admin/override-requests/{queue[0]['id']}", json={
            "decision": "approve",
            "admin_notes": "Stub matches employer records",
            "reviewer_id": "admin-1",
        })

        assert response.status_code == 200
        assert response.json()["status"] == "APPROVED"
        assert client.get("/api/admin/override-requests").json() == []

    def test_approve_without_notes_is_bad_request(self, client, session, loaded):
        maria = resident_id(session, "Maria Lopez")
        client.post(f"/api/residents/{maria}/documents", json=dict(PAYSTUB, status="NEEDS_REVIEW"))
        request_id = client.get("/api/admin/override-requests").json()[0]["id"]

        response = client.patch(f"/api/admin/override-requests/{request_id}", json={
            "decision": "deny",
            "reviewer_id": "admin-1",
        })

        assert response.status_code == 400


class TestReconciliation:
    def test_accept_current_requires_continuity(self, client, loaded):
        response = client.post(f"/api/properties/{loaded}/future-lease-reconciliation", json={
            "lease_id": str(uuid.uuid4()),
            "action": "accept",
            "target": "current",
        })

        assert response.status_code == 422

    def test_unknown_lease_is_404(self, client, loaded):
        response = client.post(f"/api/properties/{loaded}/future-lease-reconciliation", json={
            "lease_id": str(uuid.uuid4()),
            "action": "reject",
            "target": "future",
        })

        assert response.status_code == 404

    def test_reject_current_keeps_lease(self, client, session, loaded):
        maria = session.query(Resident).filter_by(name="Maria Lopez").one()

        response = client.post(f"/api/properties/{loaded}/future-lease-reconciliation", json={
            "lease_id": str(maria.lease_id),
            "action": "reject",
            "target": "current",
        })

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "action": "reject",
            "target": "current",
            "lease_id": str(maria.lease_id),
        }

    def test_lease_of_another_property_is_404(self, client, session, loaded):
        """Should not apply a decision posted under a property that does not own the lease."""
        maria = session.query(Resident).filter_by(name="Maria Lopez").one()
        other = client.post("/api/properties", json={"name": "Birch Row"}).json()["id"]

        response = client.post(f"/api/properties/{other}/future-lease-reconciliation", json={
            "lease_id": str(maria.lease_id),
            "action": "reject",
            "target": "current",
        })

        assert response.status_code == 404
        assert session.query(ChangeLog).filter_by(record_id=maria.lease_id).count() == 0
