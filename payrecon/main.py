"""
FastAPI application for the payment reconciliation engine.

Exposes the bulk import, real-time notification intake, manual review and
scheduler trigger entry points. Engine calls are blocking and run through
``asyncio.to_thread``.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
import structlog

from .config import get_settings
from .exceptions import (
    ClaimConflict,
    InvalidTransitionError,
    LedgerError,
    RecordNotFoundError,
    RequestValidationError,
    TransientIOError,
)
from .ledger import HttpLedgerGateway, InMemoryLedger
from .logging_config import setup_logging
from .models import (
    AuditAction,
    PaymentNotification,
    QueueStatus,
    RecordFilters,
    StatementLine,
    TransactionSource,
    TransactionStatus,
    utc_now,
)
from .reconciliation import ReconciliationService
from .storage import SqlStore
from .utils.money import to_minor_units

logger = structlog.get_logger()
settings = get_settings()

setup_logging(settings.app_log_level)


@lru_cache
def get_service() -> ReconciliationService:
    """Process-wide service bound to the configured database and ledger."""
    store = SqlStore(settings.database_url, echo=settings.app_debug)
    store.init_schema()

    if settings.ledger_api_url:
        ledger = HttpLedgerGateway(settings=settings)
    else:
        logger.warning("LEDGER_API_URL not set, using in-memory ledger")
        ledger = InMemoryLedger()

    return ReconciliationService(store, ledger, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Payment Reconciliation API", env=settings.app_env)
    yield
    logger.info("Shutting down Payment Reconciliation API")


app = FastAPI(
    title="Payment Reconciliation Engine",
    description="Matches bank and mobile money payments to ledger payments",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request models
class StatementLineRequest(BaseModel):
    source: TransactionSource = TransactionSource.BANK
    external_reference: Optional[str] = None
    amount: Decimal
    reported_date: Optional[date] = None
    description: str = ""


class ImportRequest(BaseModel):
    tenant_id: str
    lines: List[StatementLineRequest]
    batch_id: Optional[str] = None


class AutoReconcileRequest(BaseModel):
    tenant_id: str


class PaymentEventRequest(BaseModel):
    tenant_id: str
    amount: Decimal
    currency: str = "KES"
    external_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    sender_phone: Optional[str] = None
    sender_name: Optional[str] = None
    reported_date: Optional[date] = None
    source: TransactionSource = TransactionSource.MOBILE_MONEY


class ManualMatchRequest(BaseModel):
    external_transaction_id: str
    candidate_payment_id: str
    actor: str = "operator"


class QueueRunRequest(BaseModel):
    batch_size: Optional[int] = Field(default=None, gt=0)


class ExceptionRequest(BaseModel):
    exception_type: str
    notes: Optional[str] = None
    actor: str = "operator"


class IgnoreRequest(BaseModel):
    actor: str = "operator"


async def _run(func, *args, **kwargs):
    """Run a blocking engine call and translate engine errors to HTTP."""
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except RequestValidationError as e:
        raise HTTPException(422, {"code": e.code, "message": str(e), "errors": e.errors})
    except RecordNotFoundError as e:
        raise HTTPException(404, {"code": e.code, "message": str(e)})
    except (ClaimConflict, InvalidTransitionError) as e:
        raise HTTPException(409, {"code": e.code, "message": str(e)})
    except TransientIOError as e:
        logger.warning("Transient failure serving request", error=str(e))
        raise HTTPException(503, {"code": e.code, "message": str(e)})
    except LedgerError as e:
        logger.error("Ledger rejected request", error=str(e), status_code=e.status_code)
        raise HTTPException(502, {"code": e.code, "message": str(e)})


def _minor_units(amount: Decimal, field_name: str = "amount") -> int:
    try:
        return to_minor_units(amount)
    except ValueError as e:
        raise HTTPException(
            422,
            {"code": RequestValidationError.code, "message": f"{field_name}: {e}"},
        )


# API Endpoints
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": utc_now().isoformat()}


@app.post("/api/reconciliation/imports")
async def import_statement(
    request: ImportRequest,
    service: ReconciliationService = Depends(get_service),
):
    """Import statement lines and auto-match them in one sweep."""
    lines = [
        StatementLine(
            amount_cents=_minor_units(line.amount, f"lines[{i}].amount"),
            source=line.source,
            external_reference=line.external_reference,
            reported_date=line.reported_date,
            description=line.description,
        )
        for i, line in enumerate(request.lines)
    ]
    summary = await _run(
        service.import_statement, request.tenant_id, lines, batch_id=request.batch_id
    )
    return summary.to_dict()


@app.post("/api/reconciliation/auto-reconcile")
async def auto_reconcile(
    request: AutoReconcileRequest,
    service: ReconciliationService = Depends(get_service),
):
    """Sweep every unmatched record of a tenant."""
    summary = await _run(service.auto_reconcile, request.tenant_id)
    return summary.to_dict()


@app.post("/api/ipn/events", status_code=202)
async def receive_payment_event(
    request: PaymentEventRequest,
    service: ReconciliationService = Depends(get_service),
):
    """Accept one payment notification for asynchronous matching."""
    notification = PaymentNotification(
        tenant_id=request.tenant_id,
        amount_cents=_minor_units(request.amount),
        currency=request.currency,
        external_reference=request.external_reference,
        bank_reference=request.bank_reference,
        sender_phone=request.sender_phone,
        sender_name=request.sender_name,
        reported_date=request.reported_date,
        source=request.source,
    )
    ack = await _run(service.receive_notification, notification)
    return ack.to_dict()


@app.post("/api/reconciliation/manual-match")
async def manual_match(
    request: ManualMatchRequest,
    service: ReconciliationService = Depends(get_service),
):
    """Force a match between a record and a ledger payment."""
    txn = await _run(
        service.manual_match,
        request.external_transaction_id,
        request.candidate_payment_id,
        actor=request.actor,
    )
    return txn.to_dict()


@app.post("/api/reconciliation/queue/run")
async def run_queue(
    request: Optional[QueueRunRequest] = None,
    service: ReconciliationService = Depends(get_service),
):
    """Run one scheduler pass (cron trigger)."""
    batch_size = request.batch_size if request else None
    result = await _run(service.run_scheduler, batch_size)
    return result.to_dict()


@app.get("/api/reconciliation/records")
async def list_records(
    tenant_id: str,
    status: Optional[TransactionStatus] = None,
    source: Optional[TransactionSource] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = Query(default=settings.records_limit, gt=0),
    service: ReconciliationService = Depends(get_service),
):
    """List a tenant's external transactions."""
    filters = RecordFilters(
        status=status,
        source=source,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
    )
    records = await _run(service.list_records, tenant_id, filters)
    return {"records": [r.to_dict() for r in records], "count": len(records)}


@app.get("/api/reconciliation/summary")
async def get_summary(
    tenant_id: str,
    on_date: Optional[date] = None,
    service: ReconciliationService = Depends(get_service),
):
    """Counts and totals of a tenant's records."""
    summary = await _run(service.summary, tenant_id, on_date)
    return summary.to_dict()


@app.get("/api/reconciliation/records/{record_id}/suggestions")
async def get_suggestions(
    record_id: str,
    limit: Optional[int] = Query(default=None, gt=0),
    service: ReconciliationService = Depends(get_service),
):
    """Ranked candidate payments for manual review."""
    suggestions = await _run(service.suggest_matches, record_id, limit)
    return {"suggestions": [s.to_dict() for s in suggestions]}


@app.post("/api/reconciliation/records/{record_id}/exception")
async def mark_exception(
    record_id: str,
    request: ExceptionRequest,
    service: ReconciliationService = Depends(get_service),
):
    """Flag a record for investigation."""
    txn = await _run(
        service.mark_exception,
        record_id,
        request.exception_type,
        request.notes,
        actor=request.actor,
    )
    return txn.to_dict()


@app.post("/api/reconciliation/records/{record_id}/ignore")
async def ignore_record(
    record_id: str,
    request: Optional[IgnoreRequest] = None,
    service: ReconciliationService = Depends(get_service),
):
    """Dismiss a record."""
    actor = request.actor if request else "operator"
    txn = await _run(service.ignore, record_id, actor=actor)
    return txn.to_dict()


@app.get("/api/reconciliation/queue")
async def list_queue(
    tenant_id: str,
    status: Optional[List[QueueStatus]] = Query(default=None),
    service: ReconciliationService = Depends(get_service),
):
    """List a tenant's processing queue items."""
    items = await _run(service.list_queue, tenant_id, status)
    return {"items": [i.to_dict() for i in items], "count": len(items)}


@app.get("/api/reconciliation/audit")
async def list_audit(
    tenant_id: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    service: ReconciliationService = Depends(get_service),
):
    """Read the audit trail."""
    entries = await _run(
        service.audit_entries,
        tenant_id=tenant_id,
        entity_id=entity_id,
        action=action,
    )
    return {"entries": [e.to_dict() for e in entries], "count": len(entries)}
