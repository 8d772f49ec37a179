"""BillDesk payment API.

Public routes receive the gateway's browser return and server webhook;
initialize/status and the ops log routes sit behind the API key gate.
"""

import json
from functools import lru_cache
from time import perf_counter

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import RedirectResponse

from bdpay.common.config import load_billdesk_settings, settings
from bdpay.common.db import SessionLocal
from bdpay.common.errors import (
    AmountExceedsLimit,
    GatewayError,
    GatewayTimeout,
    InvalidAmount,
    MissingOrderId,
    OrderNotFound,
    PaymentError,
    RateLimited,
)
from bdpay.common.jose import EnvelopeCodec
from bdpay.common.logging import configure_logging, logger
from bdpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from bdpay.common.rate_limit import build_rate_limiter
from bdpay.common.startup import log_gateway_config, log_startup_config
from bdpay.common.tracing import instrument_app, setup_tracing
from bdpay.services.billdesk.client import BillDeskClient
from bdpay.services.billdesk.diagnostics import GatewayDiagnostics
from bdpay.services.billdesk.processor import ResponseProcessor
from bdpay.services.billdesk.service import BillDeskPaymentService
from bdpay.services.billdesk.store import OrderStore, TransactionStore

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_URL",
        "REDIS_URL",
        "FRONTEND_URL",
        "BILLDESK_MERCHANT_ID",
        "BILLDESK_CLIENT_ID",
        "BILLDESK_SECURITY_ID",
        "BILLDESK_CLIENT_SECRET",
        "BILLDESK_BASE_URL",
        "BILLDESK_RETURN_URL",
        "BILLDESK_WEBHOOK_URL",
        "BILLDESK_RATE_LIMIT_BACKEND",
    ],
)


@lru_cache
def get_service() -> BillDeskPaymentService:
    """Build the payment service once; gateway settings are read on first use."""

    billdesk = load_billdesk_settings()
    log_gateway_config(billdesk)
    codec = EnvelopeCodec.from_settings(billdesk)
    transactions = TransactionStore(SessionLocal)
    orders = OrderStore(SessionLocal)
    diagnostics = GatewayDiagnostics(SessionLocal)
    client = BillDeskClient(
        billdesk,
        codec,
        build_rate_limiter(billdesk, settings.redis_url),
        transactions,
        orders,
        diagnostics,
    )
    processor = ResponseProcessor(billdesk, codec, transactions, diagnostics)
    return BillDeskPaymentService(
        billdesk, client, processor, transactions, orders, diagnostics, frontend_url=settings.frontend_url
    )


app = FastAPI(title="BillDesk Payments")
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
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def _payment_error(exc: PaymentError) -> HTTPException:
    """Map payment errors to HTTP status codes without leaking internals."""

    if isinstance(exc, (InvalidAmount, AmountExceedsLimit, MissingOrderId)):
        return HTTPException(status_code=400, detail={"code": exc.code, "message": exc.message})
    if isinstance(exc, RateLimited):
        return HTTPException(status_code=429, detail={"code": exc.code, "message": exc.message})
    if isinstance(exc, OrderNotFound):
        return HTTPException(status_code=404, detail={"code": exc.code, "message": exc.message})
    if isinstance(exc, GatewayTimeout):
        return HTTPException(status_code=504, detail={"code": exc.code, "message": exc.message})
    if isinstance(exc, GatewayError):
        return HTTPException(status_code=502, detail={"code": exc.code, "message": exc.message})
    return HTTPException(status_code=500, detail={"code": exc.code, "message": "Payment processing failed"})


def client_ip(request: Request) -> str:
    """First hop of `X-Forwarded-For`, else the socket peer."""

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "127.0.0.1"


async def read_gateway_callback(request: Request):
    """Raw callback body: form fields as a dict, JSON objects as a dict, else text."""

    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    body = (await request.body()).decode("utf-8", errors="replace").strip()
    if content_type.startswith("application/json"):
        try:
            parsed = json.loads(body)
        except ValueError:
            return body
        if isinstance(parsed, dict):
            return parsed
    return body


@app.post("/payments/billdesk/initialize/{order_id}")
async def initialize_payment(
    order_id: str,
    request: Request,
    x_api_key: str | None = Header(default=None),
    service: BillDeskPaymentService = Depends(get_service),
):
    """Create the gateway order and return the checkout continuation."""

    enforce_api_key(x_api_key)
    try:
        return await service.initialize_payment(order_id, client_ip(request), request.headers.get("user-agent"))
    except PaymentError as exc:
        logger.warning("payment initialization failed order_id=%s code=%s", order_id, exc.code)
        raise _payment_error(exc) from exc


@app.get("/payments/billdesk/status/{order_id}")
async def payment_status(
    order_id: str,
    x_api_key: str | None = Header(default=None),
    service: BillDeskPaymentService = Depends(get_service),
):
    enforce_api_key(x_api_key)
    try:
        return await service.check_status(order_id)
    except PaymentError as exc:
        raise _payment_error(exc) from exc


@app.post("/payments/billdesk/return")
async def payment_return(request: Request, service: BillDeskPaymentService = Depends(get_service)):
    """Browser lands here after checkout; always redirects to the storefront."""

    raw = await read_gateway_callback(request)
    result, url = service.handle_return(raw)
    logger.info("payment return order_number=%s status=%s", result.order_number, result.status)
    return RedirectResponse(url, status_code=303)


@app.post("/payments/billdesk/webhook")
async def payment_webhook(request: Request, service: BillDeskPaymentService = Depends(get_service)):
    """Server-to-server notification; acknowledged with 200 whatever the outcome."""

    raw = await read_gateway_callback(request)
    return service.handle_webhook(raw)


@app.get("/ops/billdesk-logs/recent")
def recent_gateway_logs(
    count: int = Query(default=10, ge=1, le=200),
    x_api_key: str | None = Header(default=None),
    service: BillDeskPaymentService = Depends(get_service),
):
    enforce_api_key(x_api_key)
    logs = service.diagnostics.recent(count)
    return {"success": True, "count": len(logs), "logs": logs}


@app.get("/ops/billdesk-logs/trace/{trace_id}")
def gateway_logs_by_trace(
    trace_id: str,
    x_api_key: str | None = Header(default=None),
    service: BillDeskPaymentService = Depends(get_service),
):
    enforce_api_key(x_api_key)
    logs = service.diagnostics.by_trace_id(trace_id)
    if not logs:
        raise HTTPException(status_code=404, detail="no logs found for this trace id")
    return {"success": True, "trace_id": trace_id, "count": len(logs), "logs": logs}


@app.get("/ops/billdesk-logs/support-ticket/{trace_id}")
def gateway_support_ticket(
    trace_id: str,
    x_api_key: str | None = Header(default=None),
    service: BillDeskPaymentService = Depends(get_service),
):
    enforce_api_key(x_api_key)
    ticket = service.diagnostics.support_ticket(trace_id)
    if ticket is None:
        raise HTTPException(status_code=404, detail="no logs found for this trace id")
    return {"success": True, "ticket": ticket}


@app.post("/ops/billdesk-logs/cleanup")
def cleanup_gateway_logs(
    days: int = 7,
    x_api_key: str | None = Header(default=None),
    service: BillDeskPaymentService = Depends(get_service),
):
    enforce_api_key(x_api_key)
    deleted = service.diagnostics.purge_older_than(days)
    return {"success": True, "deleted": deleted}


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
