"""Deposit scanner API + scan scheduler lifecycle.

Runs reconciliation passes on a fixed interval, publishes credited-deposit
events from the outbox, and exposes intent, status and operator endpoints.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request

from chainpay.common.config import settings
from chainpay.common.db import SessionLocal
from chainpay.common.logging import configure_logging, trace_id_ctx
from chainpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from chainpay.common.startup import log_startup_config
from chainpay.common.tracing import instrument_app, setup_tracing
from chainpay.services.deposits.chain import ChainReadError
from chainpay.services.deposits.schemas import (
    AdminDepositsResponse,
    AdminLedgerResponse,
    DepositHistoryResponse,
    DepositInstructionsResponse,
    DepositIntentCreateRequest,
    DepositStatusResponse,
    ReconciliationResponse,
    ScanPassResult,
)
from chainpay.services.deposits.service import DepositScanService, RateLimitedError

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "REDIS_URL",
        "RPC_URL",
        "CHAIN_ID",
        "TOKEN_CONTRACT",
        "TREASURY_ADDRESS",
        "CONFIRMATION_THRESHOLD",
        "SCAN_INTERVAL_SECONDS",
    ],
    problems=settings.configuration_errors(),
)
service = DepositScanService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the scan scheduler and outbox publisher with the app lifecycle."""

    tasks = [asyncio.create_task(service.outbox_publisher())]
    if settings.scanner_enabled:
        tasks.append(asyncio.create_task(service.run_forever()))
    yield
    for task in tasks:
        task.cancel()
    await service.kafka.close()


app = FastAPI(title="ChainPay Deposit Scanner", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def enforce_api_key(x_api_key: str | None) -> None:
    """Simple API-key gate for trigger and operator endpoints."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.post("/internal/scan", response_model=ScanPassResult)
def trigger_scan(x_api_key: str | None = Header(default=None), x_trace_id: str | None = Header(default=None)):
    """Run one reconciliation pass now and return its statistics."""

    enforce_api_key(x_api_key)
    trace_id_ctx.set(x_trace_id or str(uuid4()))
    try:
        return service.run_pass()
    except ChainReadError as exc:
        raise HTTPException(status_code=503, detail=f"chain node unavailable: {exc}") from exc


@app.post("/deposits/intents", response_model=DepositInstructionsResponse)
def create_intent(req: DepositIntentCreateRequest, x_api_key: str | None = Header(default=None)):
    """Register a deposit intent and return the treasury transfer instructions."""

    enforce_api_key(x_api_key)
    try:
        return service.create_intent(req.user_id, req.amount)
    except RateLimitedError as exc:
        raise HTTPException(status_code=429, detail=str(exc)) from exc
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/deposits/intents", response_model=DepositHistoryResponse)
def deposit_history(user_id: str = Query(min_length=1), x_api_key: str | None = Header(default=None)):
    """Latest deposit intents for one user, with their transfers."""

    enforce_api_key(x_api_key)
    return DepositHistoryResponse(deposits=service.intent_history(user_id))


@app.get("/deposits/{intent_id}/status", response_model=DepositStatusResponse)
def deposit_status(intent_id: str):
    """Current status of one intent with live confirmation counts."""

    try:
        return service.deposit_status(intent_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="deposit intent not found") from exc


@app.get("/admin/deposits", response_model=AdminDepositsResponse)
def admin_deposits(
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    x_api_key: str | None = Header(default=None),
):
    """Paginated observed transfers with per-status summary."""

    enforce_api_key(x_api_key)
    try:
        return service.admin_deposits(status=status.upper() if status else None, page=page, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/admin/ledger", response_model=AdminLedgerResponse)
def admin_ledger(
    entry_type: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    x_api_key: str | None = Header(default=None),
):
    """Paginated ledger entries, optionally filtered by entry type."""

    enforce_api_key(x_api_key)
    try:
        return service.admin_ledger(entry_type=entry_type.upper() if entry_type else None, page=page, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/reconciliation", response_model=ReconciliationResponse)
def reconciliation_report(limit: int = Query(default=1000, ge=1), x_api_key: str | None = Header(default=None)):
    """Users whose balance disagrees with the sum of their ledger entries."""

    enforce_api_key(x_api_key)
    return service.reconciliation(limit=limit)
