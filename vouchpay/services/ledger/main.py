"""Ledger service API + lifecycle.

Exposes the three money-moving operations to trusted internal callers (the
customer-facing API has already authenticated the customer and verified any
voucher), plus account history, reconciliation and settlement endpoints.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from vouchpay.common.config import settings
from vouchpay.common.db import session_factory_from_settings
from vouchpay.common.logging import configure_logging, trace_id_ctx
from vouchpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from vouchpay.common.startup import log_startup_config
from vouchpay.common.tracing import instrument_app, setup_tracing
from vouchpay.services.ledger.errors import InvalidInput, LedgerError
from vouchpay.services.ledger.schemas import (
    ConfirmSettlementRequest,
    OpenAccountRequest,
    RedeemRequest,
    TransferRequest,
    WithdrawRequest,
)
from vouchpay.services.ledger.service import LedgerService, build_engine

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "REDIS_URL",
        "LOCK_BACKEND",
        "LOCK_TIMEOUT_SECONDS",
        "REDEEM_COMMISSION_RATE",
        "TRANSFER_COMMISSION_RATE",
        "BANK_RAIL_URL",
    ],
)
SessionLocal = session_factory_from_settings()
service = LedgerService(SessionLocal, build_engine(SessionLocal), service_name=settings.service_name)

ERROR_STATUS = {
    "INVALID_INPUT": 400,
    "NOT_FOUND": 404,
    "INSUFFICIENT_FUNDS": 409,
    "LOCK_TIMEOUT": 503,
    "STORAGE_FAILURE": 500,
}


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Ensure the operator account exists and start publisher/consumer loops."""

    service.ensure_accounts()
    publisher_task = asyncio.create_task(service.outbox_publisher())
    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    publisher_task.cancel()
    consumer_task.cancel()
    await service.kafka.close()


app = FastAPI(title="VouchPay Ledger Service", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        labels = {"service": settings.service_name, "route": route, "method": request.method}
        http_request_duration_seconds.labels(**labels).observe(max(0.0, perf_counter() - start))
        http_requests_total.labels(**labels, status_code=str(status_code)).inc()


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject callers that do not present the internal API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def _ledger_error(exc: LedgerError) -> HTTPException:
    """Map ledger failures to HTTP; only lock contention carries retry guidance."""

    headers = {"Retry-After": "1"} if exc.retryable else None
    return HTTPException(status_code=ERROR_STATUS.get(exc.kind, 400), detail=exc.as_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_error(_: Request, exc: RequestValidationError):
    """Malformed bodies and out-of-range amounts are ledger INVALID_INPUT failures."""

    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'][1:]) or 'body'}: {error['msg']}" for error in exc.errors()
    )
    return JSONResponse(status_code=400, content={"detail": InvalidInput(problems).as_dict()})


def _bind_trace(x_trace_id: str | None) -> None:
    trace_id_ctx.set(x_trace_id or str(uuid4()))


@app.post("/accounts")
def open_account(req: OpenAccountRequest, x_api_key: str | None = Header(default=None)):
    """Open a zero-balance customer account (idempotent)."""

    enforce_api_key(x_api_key)
    try:
        return service.open_account(req.account_id)
    except LedgerError as exc:
        raise _ledger_error(exc) from exc


@app.get("/accounts/{account_id}")
def get_account(account_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    try:
        return service.get_account(account_id)
    except LedgerError as exc:
        raise _ledger_error(exc) from exc


@app.get("/accounts/{account_id}/entries")
def account_entries(
    account_id: str,
    limit: int = 50,
    offset: int = 0,
    x_api_key: str | None = Header(default=None),
):
    """Recent ledger entries for one account, newest first."""

    enforce_api_key(x_api_key)
    try:
        return service.account_history(account_id, limit=limit, offset=offset)
    except LedgerError as exc:
        raise _ledger_error(exc) from exc


@app.post("/operations/redeem")
def redeem(
    req: RedeemRequest,
    x_api_key: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Credit a voucher whose face value the voucher provider already verified."""

    enforce_api_key(x_api_key)
    _bind_trace(x_trace_id)
    try:
        return service.engine.redeem(req.customer_id, req.voucher_face_value, req.voucher_code, req.voucher_type)
    except LedgerError as exc:
        raise _ledger_error(exc) from exc


@app.post("/operations/withdraw")
def withdraw(
    req: WithdrawRequest,
    x_api_key: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    _bind_trace(x_trace_id)
    try:
        return service.engine.withdraw(req.customer_id, req.amount, req.bank_destination)
    except LedgerError as exc:
        raise _ledger_error(exc) from exc


@app.post("/operations/transfer")
def transfer(
    req: TransferRequest,
    x_api_key: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    _bind_trace(x_trace_id)
    try:
        return service.engine.transfer(req.sender_id, req.recipient_id, req.amount)
    except LedgerError as exc:
        raise _ledger_error(exc) from exc


@app.get("/operations/{operation_id}")
def operation(operation_id: str, x_api_key: str | None = Header(default=None)):
    """Every entry written by one operation."""

    enforce_api_key(x_api_key)
    entries = service.operation_entries(operation_id)
    if not entries:
        raise HTTPException(status_code=404, detail="operation not found")
    return entries


@app.get("/reconciliation/{operation_id}")
def reconciliation(operation_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return service.reconcile_operation(operation_id)


@app.get("/commission")
def commission(x_api_key: str | None = Header(default=None)):
    """Operator commission balance and totals by operation kind."""

    enforce_api_key(x_api_key)
    try:
        return service.commission_summary()
    except LedgerError as exc:
        raise _ledger_error(exc) from exc


@app.get("/settlements")
def settlements(status: str = "PENDING", limit: int = 100, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return service.list_settlements(status=status.upper(), limit=limit)


@app.post("/settlements/{operation_id}/confirm")
def confirm_settlement(
    operation_id: str,
    req: ConfirmSettlementRequest,
    x_api_key: str | None = Header(default=None),
):
    """Mark a pending withdrawal as paid out after external reconciliation."""

    enforce_api_key(x_api_key)
    try:
        return service.confirm_settlement(operation_id, req.bank_reference)
    except LedgerError as exc:
        raise _ledger_error(exc) from exc


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
