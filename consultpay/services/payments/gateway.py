"""PhonePe pay-page adapter.

Creates hosted payment sessions and reads back order state. The adapter never
touches the payment store; callers decide what a gateway answer means.
"""

import base64
import hashlib
import json
import time
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx

from consultpay.common.config import GatewaySettings
from consultpay.common.errors import GatewayRejected, GatewayUnavailable
from consultpay.common.logging import logger
from consultpay.common.metrics import gateway_errors_total, gateway_request_seconds


PAY_ENDPOINT = "/pg/v1/pay"
STATUS_ENDPOINT = "/pg/v1/status"

# GatewayState values returned by `query_status`.
STATE_PENDING = "PENDING"
STATE_SUCCESS = "SUCCESS"
STATE_FAILED = "FAILED"
STATE_CANCELLED = "CANCELLED"
STATE_EXPIRED = "EXPIRED"

_PROVIDER_STATES = {
    "COMPLETED": STATE_SUCCESS,
    "SUCCESS": STATE_SUCCESS,
    "PAYMENT_SUCCESS": STATE_SUCCESS,
    "FAILED": STATE_FAILED,
    "PAYMENT_ERROR": STATE_FAILED,
    "PAYMENT_DECLINED": STATE_FAILED,
    "CANCELLED": STATE_CANCELLED,
    "PAYMENT_CANCELLED": STATE_CANCELLED,
    "EXPIRED": STATE_EXPIRED,
}


@dataclass(frozen=True)
class GatewaySession:
    order_id: str
    redirect_url: str


def x_verify(material: str, salt_key: str, salt_index: int) -> str:
    """PhonePe request checksum: sha256(material + salt) + '###' + index."""

    digest = hashlib.sha256(f"{material}{salt_key}".encode("utf-8")).hexdigest()
    return f"{digest}###{salt_index}"


def map_provider_state(data: dict) -> str:
    """Translate a status response body to a GatewayState value."""

    inner = data.get("data") or {}
    for candidate in (inner.get("state"), data.get("code"), inner.get("responseCode")):
        if isinstance(candidate, str) and candidate.upper() in _PROVIDER_STATES:
            return _PROVIDER_STATES[candidate.upper()]
    return STATE_PENDING


class PhonePeGateway:
    """Thin async client for the PhonePe standard checkout API."""

    def __init__(self, gateway_settings: GatewaySettings, service_name: str = "payments") -> None:
        self.settings = gateway_settings
        self.service_name = service_name

    def landing_url(self, order_id: str, payer_id: str, payee_id: str) -> str:
        query = urlencode({"orderId": order_id, "payerId": payer_id, "payeeId": payee_id})
        return f"{self.settings.callback_base_url.rstrip('/')}/payments/redirect-landing?{query}"

    def webhook_url(self) -> str:
        return f"{self.settings.callback_base_url.rstrip('/')}/payments/webhook"

    async def _send(self, operation: str, method: str, path: str, **kwargs) -> dict:
        """Issue one request and classify failures as unavailable or rejected."""

        url = f"{self.settings.base_url.rstrip('/')}{path}"
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.settings.timeout_seconds) as client:
                resp = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            gateway_errors_total.labels(
                service=self.service_name, operation=operation, error_type=type(exc).__name__
            ).inc()
            logger.warning("gateway_unreachable operation=%s error=%s", operation, exc)
            raise GatewayUnavailable(f"{operation}: {exc}") from exc
        finally:
            gateway_request_seconds.labels(service=self.service_name, operation=operation).observe(
                max(0.0, time.perf_counter() - started)
            )

        if resp.status_code >= 500:
            gateway_errors_total.labels(
                service=self.service_name, operation=operation, error_type=f"http_{resp.status_code}"
            ).inc()
            raise GatewayUnavailable(f"{operation}: gateway returned {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            gateway_errors_total.labels(
                service=self.service_name, operation=operation, error_type="malformed_body"
            ).inc()
            raise GatewayUnavailable(f"{operation}: malformed gateway response") from exc
        if resp.status_code >= 400:
            gateway_errors_total.labels(
                service=self.service_name, operation=operation, error_type=f"http_{resp.status_code}"
            ).inc()
            raise GatewayRejected(f"{operation}: {body.get('message') or body.get('code') or resp.status_code}")
        return body

    async def initiate(self, order_id: str, amount_minor: int, payer_id: str, payee_id: str) -> GatewaySession:
        """Open a hosted pay page for `order_id` and return its URL."""

        payload = {
            "merchantId": self.settings.merchant_id,
            "merchantTransactionId": order_id,
            "merchantUserId": payer_id,
            "amount": amount_minor,
            "redirectUrl": self.landing_url(order_id, payer_id, payee_id),
            "redirectMode": "REDIRECT",
            "callbackUrl": self.webhook_url(),
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        encoded = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")
        body = await self._send(
            "initiate",
            "POST",
            PAY_ENDPOINT,
            json={"request": encoded},
            headers={
                "Content-Type": "application/json",
                "X-VERIFY": x_verify(encoded + PAY_ENDPOINT, self.settings.salt_key, self.settings.salt_index),
            },
        )
        redirect_url = (
            ((body.get("data") or {}).get("instrumentResponse") or {}).get("redirectInfo") or {}
        ).get("url")
        if not body.get("success") or not redirect_url:
            gateway_errors_total.labels(
                service=self.service_name, operation="initiate", error_type="rejected"
            ).inc()
            raise GatewayRejected(f"initiate: {body.get('message') or body.get('code') or 'no redirect url'}")
        return GatewaySession(order_id=order_id, redirect_url=redirect_url)

    async def query_status(self, order_id: str) -> str:
        """Return the gateway's current GatewayState for `order_id`."""

        path = f"{STATUS_ENDPOINT}/{self.settings.merchant_id}/{order_id}"
        body = await self._send(
            "query_status",
            "GET",
            path,
            headers={
                "Content-Type": "application/json",
                "X-VERIFY": x_verify(path, self.settings.salt_key, self.settings.salt_index),
                "X-MERCHANT-ID": self.settings.merchant_id,
            },
        )
        return map_provider_state(body)
