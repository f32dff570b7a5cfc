"""HTTP surface for payment initiation, gateway callbacks and credits.

Three channels report payment outcomes here: the gateway webhook
(authoritative), the browser redirect landing (advisory) and status polling
(advisory). All of them end in `ReconciliationEngine.apply`.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from decimal import Decimal
from time import perf_counter
from urllib.parse import urlencode
from uuid import uuid4

import redis
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import ValidationError

from consultpay.common.config import CommonSettings, GatewaySettings, WebhookSettings, settings
from consultpay.common.db import SessionLocal
from consultpay.common.errors import (
    ConcurrentUpdateError,
    GatewayRejected,
    GatewayUnavailable,
    NoCreditAvailable,
    Unauthorized,
    UnknownOrder,
)
from consultpay.common.logging import configure_logging, logger, trace_id_ctx
from consultpay.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    webhook_auth_failures_total,
)
from consultpay.common.startup import log_startup_config
from consultpay.common.tracing import instrument_app, setup_tracing
from consultpay.services.payments.credits import CreditLedger
from consultpay.services.payments.gateway import PhonePeGateway
from consultpay.services.payments.models import PaymentAttempt
from consultpay.services.payments.schemas import (
    AttemptResponse,
    CreditCountResponse,
    InitiateRequest,
    InitiateResponse,
    PairRequest,
    PaymentStatusResponse,
    SweepResponse,
    WebhookEvent,
)
from consultpay.services.payments.service import (
    CHANNEL_WEBHOOK,
    PaymentService,
    ReconciliationEngine,
)
from consultpay.services.payments.webhook import WebhookAuthenticator

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "REDIS_URL",
        "PHONEPE_MERCHANT_ID",
        "PHONEPE_BASE_URL",
        "PHONEPE_SALT_KEY",
        "PHONEPE_WEBHOOK_USERNAME",
        "SWEEP_ENABLED",
        "REDIRECT_MARKS_PAID",
    ],
    CommonSettings,
    GatewaySettings,
    WebhookSettings,
)
gateway_settings = GatewaySettings()
webhook_settings = WebhookSettings()
reconciler = ReconciliationEngine(SessionLocal, service_name=settings.service_name)
service = PaymentService(
    SessionLocal,
    reconciler,
    PhonePeGateway(gateway_settings, service_name=settings.service_name),
    service_name=settings.service_name,
)
ledger = CreditLedger(SessionLocal, service_name=settings.service_name)
authenticator = WebhookAuthenticator(webhook_settings)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the pending-payment sweeper with app lifecycle."""

    sweeper_task = None
    if settings.sweep_enabled:
        sweeper_task = asyncio.create_task(
            service.sweeper(
                settings.sweep_interval_seconds,
                settings.sweep_batch_size,
                settings.sweep_min_age_seconds,
            )
        )
    yield
    if sweeper_task is not None:
        sweeper_task.cancel()


app = FastAPI(title="ConsultPay Payments", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency, and bind a trace id for logs."""

    trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
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


def trust_redirects() -> bool:
    """Redirect arrival marks PAID only when no webhook can confirm it."""

    if settings.redirect_marks_paid is not None:
        return settings.redirect_marks_paid
    return not authenticator.configured


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def from_minor_units(amount_minor: int) -> Decimal:
    return Decimal(amount_minor).scaleb(-2)


def _idempotency_cache_key(payer_id: str, idempotency_key: str) -> str:
    return f"idempotency:initiate:{payer_id}:{idempotency_key}"


def attempt_response(attempt: PaymentAttempt) -> AttemptResponse:
    return AttemptResponse(
        attempt_id=attempt.attempt_id,
        order_id=attempt.order_id,
        payer_id=attempt.payer_id,
        payee_id=attempt.payee_id,
        amount=from_minor_units(attempt.amount_minor),
        amount_minor=attempt.amount_minor,
        status=attempt.status,
        consumed=attempt.consumed,
        consumed_at=attempt.consumed_at,
        created_at=attempt.created_at,
    )


@app.post("/payments/initiate", response_model=InitiateResponse)
async def initiate_payment(req: InitiateRequest, idempotency_key: str | None = Header(default=None)):
    """Create a PENDING attempt and return the gateway pay-page URL.

    A repeated `Idempotency-Key` from the same payer returns the first
    response instead of opening a second session.
    """

    cache_key = _idempotency_cache_key(req.payer_id, idempotency_key) if idempotency_key else None
    if cache_key:
        try:
            cached = rdb.get(cache_key)
            if cached:
                return InitiateResponse(**json.loads(cached))
        except redis.RedisError as exc:
            logger.warning("idempotency_cache_read_failed: %s", exc)

    try:
        attempt, redirect_url = await service.initiate(to_minor_units(req.amount), req.payer_id, req.payee_id)
    except GatewayUnavailable as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except GatewayRejected as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    response = InitiateResponse(order_id=attempt.order_id, redirect_url=redirect_url, status=attempt.status)
    if cache_key:
        try:
            rdb.setex(cache_key, settings.idempotency_ttl_seconds, response.model_dump_json())
        except redis.RedisError as exc:
            logger.warning("idempotency_cache_write_failed: %s", exc)
    return response


@app.get("/payments/status/{order_id}", response_model=PaymentStatusResponse)
async def payment_status(order_id: str):
    """Refresh one attempt from the gateway and return the stored outcome."""

    try:
        result = await service.poll(order_id)
    except UnknownOrder as exc:
        raise HTTPException(status_code=404, detail="payment not found") from exc
    except ConcurrentUpdateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    attempt = result.attempt
    return PaymentStatusResponse(
        order_id=attempt.order_id,
        status=attempt.status,
        gateway_state=result.gateway_state,
        indeterminate=result.indeterminate,
        amount=from_minor_units(attempt.amount_minor),
        amount_minor=attempt.amount_minor,
        payer_id=attempt.payer_id,
        payee_id=attempt.payee_id,
        consumed=attempt.consumed,
    )


@app.post("/payments/webhook")
async def payment_webhook(request: Request, authorization: str | None = Header(default=None)):
    """Gateway server-to-server notification.

    Authentication happens before the body is looked at. Once a delivery is
    authenticated and parsed it is acknowledged, even for unknown orders, so
    the gateway does not keep retrying.
    """

    try:
        authenticator.verify(authorization)
    except Unauthorized as exc:
        webhook_auth_failures_total.labels(service=settings.service_name).inc()
        logger.warning("webhook_rejected reason=%s", exc)
        raise HTTPException(status_code=401, detail="unauthorized") from exc

    try:
        event = WebhookEvent.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        logger.warning("webhook_malformed error=%s", exc)
        raise HTTPException(status_code=400, detail="malformed webhook body") from exc

    try:
        reconciler.apply(event.payload.order_id, event.payload.state, CHANNEL_WEBHOOK)
    except UnknownOrder:
        logger.warning("webhook_unknown_order order_id=%s event=%s", event.payload.order_id, event.event)
    except ConcurrentUpdateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"received": True}


@app.get("/payments/redirect-landing")
async def redirect_landing(
    order_id: str | None = Query(default=None, alias="orderId"),
    payer_id: str | None = Query(default=None, alias="payerId"),
    payee_id: str | None = Query(default=None, alias="payeeId"),
):
    """Browser return from the pay page; forwards to the frontend status view."""

    frontend = f"{settings.frontend_url.rstrip('/')}/#/payment-status"
    if not order_id or not payer_id or not payee_id:
        logger.warning("redirect_missing_params order_id=%s", order_id)
        return RedirectResponse(f"{frontend}?{urlencode({'error': 'missing_params'})}")

    params = {"orderId": order_id, "payerId": payer_id, "payeeId": payee_id}
    try:
        await service.handle_redirect(order_id, payer_id, payee_id, trust_redirects())
    except UnknownOrder:
        params["error"] = "unknown_order"
    except ConcurrentUpdateError as exc:
        logger.error("redirect_apply_failed order_id=%s error=%s", order_id, exc)
    return RedirectResponse(f"{frontend}?{urlencode(params)}")


@app.post("/payments/mark-paid", response_model=AttemptResponse)
def legacy_mark_paid(req: PairRequest):
    """Mark the newest order-less attempt of a pair as paid."""

    if not settings.legacy_mark_paid_enabled:
        raise HTTPException(status_code=404, detail="not found")
    try:
        result = reconciler.apply_legacy(req.payer_id, req.payee_id, "SUCCESS")
    except UnknownOrder as exc:
        raise HTTPException(status_code=404, detail="payment not found") from exc
    except ConcurrentUpdateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return attempt_response(result.attempt)


@app.post("/credits/claim", response_model=AttemptResponse)
def claim_credit(req: PairRequest):
    """Spend one paid consultation credit for the pair."""

    try:
        attempt = ledger.claim_credit(req.payer_id, req.payee_id)
    except NoCreditAvailable as exc:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "NO_CREDIT_AVAILABLE",
                "message": "No unused payment found. Please pay before requesting a checkup.",
            },
        ) from exc
    return attempt_response(attempt)


@app.get("/credits/count", response_model=CreditCountResponse)
def credit_count(
    payer_id: str = Query(min_length=1, alias="payerId"),
    payee_id: str = Query(min_length=1, alias="payeeId"),
):
    """Number of paid credits the pair has not spent yet."""

    return CreditCountResponse(count=ledger.count_unconsumed(payer_id, payee_id))


@app.post("/internal/reconcile", response_model=SweepResponse)
async def reconcile(limit: int = 100, min_age_seconds: int = 0, x_api_key: str | None = Header(default=None)):
    """Run one reconciliation sweep over pending attempts."""

    enforce_api_key(x_api_key)
    report = await service.sweep(limit, min_age_seconds)
    return SweepResponse(
        checked=report.checked,
        changed=report.changed,
        indeterminate=report.indeterminate,
        unknown=report.unknown,
        errors=report.errors,
    )


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
