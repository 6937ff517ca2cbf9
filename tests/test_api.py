"""
Tests for the FastAPI endpoints.
"""

import pytest
from datetime import date
from fastapi.testclient import TestClient

from payrecon.exceptions import TransientIOError
from payrecon.main import app, get_service

from .conftest import TENANT, payment

DAY = date(2024, 3, 1)


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def import_lines(client, *lines):
    return client.post("/api/reconciliation/imports", json={
        "tenant_id": TENANT,
        "lines": list(lines),
    })


class TestApi:
    """Test suite for the HTTP surface."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_bulk_import(self, client, ledger):
        ledger.add_payment(TENANT, payment("pay-1", 5000, DAY, reference="INV-1042-X"))

        response = import_lines(
            client,
            {"external_reference": "INV-1042", "amount": "50.00", "reported_date": "2024-03-01"},
            {"external_reference": "NONE", "amount": 12.5, "reported_date": "2024-03-01"},
        )

        assert response.status_code == 200
        body = response.json()
        assert (body["total"], body["matched"], body["unmatched"]) == (2, 1, 1)
        assert body["results"][0]["candidate_id"] == "pay-1"
        assert body["results"][0]["confidence"] == 100
        assert body["results"][1]["amount_cents"] == 1250

    def test_bulk_import_rejects_bad_amount(self, client, store):
        response = import_lines(
            client,
            {"amount": "10.00"},
            {"amount": "0"},
        )

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "INVALID_REQUEST"
        assert store.list_transactions(TENANT) == []

    def test_payment_event_then_queue_run(self, client, ledger):
        ledger.add_payment(TENANT, payment("pay-1", 250000, date.today(), reference="QK12ABC"))

        response = client.post("/api/ipn/events", json={
            "tenant_id": TENANT,
            "amount": "2500.00",
            "external_reference": "QK12ABC",
            "bank_reference": "QK12ABC",
            "sender_phone": "254711000000",
        })
        assert response.status_code == 202
        ack = response.json()
        assert ack["status"] == "queued"

        duplicate = client.post("/api/ipn/events", json={
            "tenant_id": TENANT,
            "amount": "2500.00",
            "bank_reference": "QK12ABC",
        })
        assert duplicate.json()["status"] == "duplicate"

        run = client.post("/api/reconciliation/queue/run", json={"batch_size": 10})
        assert run.status_code == 200
        assert run.json()["matched"] == 1

        queue = client.get("/api/reconciliation/queue", params={"tenant_id": TENANT})
        assert queue.json()["items"][0]["match_status"] == "matched"

    def test_payment_event_validation(self, client):
        response = client.post("/api/ipn/events", json={"tenant_id": TENANT, "amount": "10"})

        assert response.status_code == 422

    def test_manual_match_conflict_is_409(self, client, ledger):
        ledger.add_payment(TENANT, payment("pay-1", 5000, DAY, reference="INV-1"))
        import_lines(client, {"external_reference": "INV-1", "amount": "50", "reported_date": "2024-03-01"})
        other = import_lines(client, {"amount": "10", "reported_date": "2024-03-01"}).json()

        response = client.post("/api/reconciliation/manual-match", json={
            "external_transaction_id": other["results"][0]["transaction_id"],
            "candidate_payment_id": "pay-1",
        })

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "MANUAL_MATCH_CONFLICT"

    def test_manual_match(self, client, ledger):
        ledger.add_payment(TENANT, payment("pay-2", 500, DAY))
        record_id = import_lines(
            client, {"amount": "10", "reported_date": "2024-03-01"}
        ).json()["results"][0]["transaction_id"]

        response = client.post("/api/reconciliation/manual-match", json={
            "external_transaction_id": record_id,
            "candidate_payment_id": "pay-2",
            "actor": "bursar",
        })

        assert response.status_code == 200
        assert response.json()["status"] == "matched"
        assert response.json()["reconciled_by"] == "bursar"

    def test_unknown_record_is_404(self, client):
        response = client.post("/api/reconciliation/records/missing/ignore")

        assert response.status_code == 404

    def test_review_endpoints(self, client, ledger):
        ledger.add_payment(TENANT, payment("pay-1", 1000, date(2024, 2, 29)))
        record_id = import_lines(
            client, {"amount": "10", "reported_date": "2024-03-01"}
        ).json()["results"][0]["transaction_id"]

        suggestions = client.get(f"/api/reconciliation/records/{record_id}/suggestions")
        assert suggestions.json()["suggestions"][0]["id"] == "pay-1"
        assert suggestions.json()["suggestions"][0]["confidence"] == 75

        flagged = client.post(
            f"/api/reconciliation/records/{record_id}/exception",
            json={"exception_type": "wrong_amount", "notes": "check with bank"},
        )
        assert flagged.json()["status"] == "exception"

        records = client.get("/api/reconciliation/records", params={
            "tenant_id": TENANT, "status": "exception",
        })
        assert records.json()["count"] == 1

        ignored = client.post(f"/api/reconciliation/records/{record_id}/ignore", json={"actor": "bursar"})
        assert ignored.json()["status"] == "ignored"

        summary = client.get("/api/reconciliation/summary", params={"tenant_id": TENANT})
        assert summary.json()["ignored"] == 1

        audit = client.get("/api/reconciliation/audit", params={"entity_id": record_id})
        actions = [e["action"] for e in audit.json()["entries"]]
        assert actions == ["transaction_ingested", "review_required", "marked_exception", "ignored"]

    def test_auto_reconcile(self, client, ledger):
        import_lines(client, {"external_reference": "INV-5", "amount": "50", "reported_date": "2024-03-01"})
        ledger.add_payment(TENANT, payment("pay-5", 5000, DAY, reference="INV-5"))

        response = client.post("/api/reconciliation/auto-reconcile", json={"tenant_id": TENANT})

        assert response.json()["matched"] == 1

    def test_transient_failure_is_503(self, client, ledger, monkeypatch):
        def unavailable(*args, **kwargs):
            raise TransientIOError("ledger down")

        monkeypatch.setattr(ledger, "list_unclaimed_payments", unavailable)

        response = client.post("/api/reconciliation/auto-reconcile", json={"tenant_id": TENANT})

        assert response.status_code == 503


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
