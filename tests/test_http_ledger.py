"""
Tests for the HTTP ledger client using httpx.MockTransport.
"""

import json

import httpx
import pytest
from datetime import date
from tenacity import wait_none

from payrecon.exceptions import LedgerError, LedgerUnavailableError, TransientIOError
from payrecon.ledger import HttpLedgerGateway
from payrecon.models import PaymentFilters

from .conftest import TENANT


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(HttpLedgerGateway._send.retry, "wait", wait_none())


def gateway(handler, settings):
    return HttpLedgerGateway(
        base_url="https://ledger.test",
        token="secret",
        settings=settings,
        transport=httpx.MockTransport(handler),
    )


class TestHttpLedgerGateway:
    """Test suite for the ledger REST client."""

    def test_list_unclaimed_payments(self, settings):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"payments": [
                {
                    "id": "pay-1",
                    "amount_cents": 5000,
                    "payment_date": "2024-03-01T10:00:00Z",
                    "transaction_reference": "INV-1",
                    "account_ref": "acc-1",
                },
                {"id": 42, "amount_cents": "700", "payment_date": "2024-03-02"},
            ]})

        payments = gateway(handler, settings).list_unclaimed_payments(
            TENANT, PaymentFilters(since=date(2024, 3, 1), limit=10)
        )

        assert [p.id for p in payments] == ["pay-1", "42"]
        assert payments[0].date == date(2024, 3, 1)
        assert payments[0].external_reference == "INV-1"
        assert payments[1].amount_cents == 700
        assert payments[1].external_reference is None

        request = seen[0]
        assert request.url.path == f"/api/tenants/{TENANT}/payments"
        assert request.url.params["status"] == "confirmed"
        assert request.url.params["since"] == "2024-03-01"
        assert request.headers["Authorization"] == "Bearer secret"

    def test_create_payment_sends_idempotency_key(self, settings):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"id": "pay-new"})

        payment_id = gateway(handler, settings).create_payment(TENANT, "acc-1", 2500, "txn-1")

        assert payment_id == "pay-new"
        assert seen[0].headers["Idempotency-Key"] == "txn-1"
        assert json.loads(seen[0].content) == {
            "account_ref": "acc-1",
            "amount_cents": 2500,
            "source_ref": "txn-1",
            "payment_method": "mobile_money",
        }

    def test_recompute_balance_accepts_no_content(self, settings):
        def handler(request):
            assert request.url.path == "/api/accounts/acc-1/recompute-balance"
            return httpx.Response(204)

        gateway(handler, settings).recompute_balance("acc-1")

    def test_resolve_account(self, settings):
        def handler(request):
            assert request.url.params["reference"] == "ADM-7"
            return httpx.Response(200, json={
                "account_ref": "acc-7",
                "confidence": 95,
                "matched_by": "admission_number",
            })

        match = gateway(handler, settings).resolve_account(TENANT, "ADM-7", None)

        assert match.account_ref == "acc-7"
        assert match.confidence == 95
        assert match.invoice_id is None

    def test_resolve_account_not_found(self, settings):
        client = gateway(lambda request: httpx.Response(404, json={"detail": "no match"}), settings)

        assert client.resolve_account(TENANT, "ADM-7", "2547") is None
        assert client.resolve_account(TENANT, None, None) is None

    def test_transport_errors_are_retried_then_transient(self, settings):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(LedgerUnavailableError) as exc_info:
            gateway(handler, settings).list_unclaimed_payments(TENANT)

        assert len(attempts) == 3
        assert isinstance(exc_info.value, TransientIOError)

    def test_transport_error_recovers_on_retry(self, settings):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, json={"payments": []})

        assert gateway(handler, settings).list_unclaimed_payments(TENANT) == []
        assert len(attempts) == 2

    def test_gateway_errors_are_transient(self, settings):
        client = gateway(lambda request: httpx.Response(503), settings)

        with pytest.raises(LedgerUnavailableError):
            client.recompute_balance("acc-1")

    def test_client_errors_are_not_transient(self, settings):
        client = gateway(
            lambda request: httpx.Response(422, json={"detail": "unknown account"}), settings
        )

        with pytest.raises(LedgerError) as exc_info:
            client.create_payment(TENANT, "acc-x", 100, "txn-1")

        assert not isinstance(exc_info.value, TransientIOError)
        assert exc_info.value.status_code == 422
        assert exc_info.value.details == {"detail": "unknown account"}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
