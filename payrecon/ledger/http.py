"""
HTTP client for the school ledger service.
"""

from datetime import date
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings, get_settings
from ..exceptions import LedgerError, LedgerUnavailableError
from ..models import AccountMatch, CandidatePayment, PaymentFilters
from .base import LedgerGateway

logger = structlog.get_logger()


class HttpLedgerGateway(LedgerGateway):
    """
    ``LedgerGateway`` over the ledger service's REST API.

    Transport failures are retried with exponential backoff and surface as
    ``LedgerUnavailableError`` once retries run out, so the scheduler
    treats them as transient.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = base_url or self.settings.ledger_api_url
        self.token = token or self.settings.ledger_api_token
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.Client(
                base_url=self.base_url,
                headers=headers,
                timeout=self.settings.ledger_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            self._client.close()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _send(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        return self._get_client().request(method, endpoint, **kwargs)

    def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        """Make an authenticated request to the ledger API."""
        try:
            response = self._send(method, endpoint, **kwargs)
        except httpx.TransportError as e:
            logger.warning("Ledger unreachable", endpoint=endpoint, error=str(e))
            raise LedgerUnavailableError(f"Ledger unreachable: {e}") from e

        if response.status_code in (502, 503, 504):
            raise LedgerUnavailableError(
                f"Ledger unavailable: {response.status_code}"
            )

        if response.status_code >= 400:
            error_detail: Any = response.text
            try:
                error_detail = response.json()
            except ValueError:
                pass
            raise LedgerError(
                f"Ledger API error: {response.status_code}",
                status_code=response.status_code,
                details=error_detail,
            )

        if response.status_code == 204:
            return {}

        return response.json()

    def list_unclaimed_payments(
        self,
        tenant_id: str,
        filters: Optional[PaymentFilters] = None,
    ) -> List[CandidatePayment]:
        filters = filters or PaymentFilters()
        params: Dict[str, Any] = {"status": "confirmed", "limit": filters.limit}
        if filters.since:
            params["since"] = filters.since.isoformat()

        data = self._request("GET", f"/api/tenants/{tenant_id}/payments", params=params)

        return [
            CandidatePayment(
                id=str(item["id"]),
                amount_cents=int(item["amount_cents"]),
                date=date.fromisoformat(item["payment_date"][:10]),
                external_reference=item.get("transaction_reference"),
                account_ref=item.get("account_ref"),
            )
            for item in data.get("payments", [])
        ]

    def create_payment(
        self,
        tenant_id: str,
        account_ref: str,
        amount_cents: int,
        source_ref: str,
    ) -> str:
        data = self._request(
            "POST",
            f"/api/tenants/{tenant_id}/payments",
            json={
                "account_ref": account_ref,
                "amount_cents": amount_cents,
                "source_ref": source_ref,
                "payment_method": "mobile_money",
            },
            headers={"Idempotency-Key": source_ref},
        )
        payment_id = str(data["id"])
        logger.info(
            "Ledger payment created",
            tenant_id=tenant_id,
            account_ref=account_ref,
            payment_id=payment_id,
        )
        return payment_id

    def recompute_balance(self, account_ref: str) -> None:
        self._request("POST", f"/api/accounts/{account_ref}/recompute-balance")

    def resolve_account(
        self,
        tenant_id: str,
        external_reference: Optional[str],
        sender_phone: Optional[str],
    ) -> Optional[AccountMatch]:
        params = {}
        if external_reference:
            params["reference"] = external_reference
        if sender_phone:
            params["phone"] = sender_phone
        if not params:
            return None

        try:
            data = self._request(
                "GET",
                f"/api/tenants/{tenant_id}/accounts/resolve",
                params=params,
            )
        except LedgerError as e:
            if e.status_code == 404:
                return None
            raise

        if not data.get("account_ref"):
            return None

        return AccountMatch(
            account_ref=str(data["account_ref"]),
            confidence=int(data.get("confidence", 0)),
            matched_by=data.get("matched_by", "ledger"),
            invoice_id=data.get("invoice_id"),
        )
