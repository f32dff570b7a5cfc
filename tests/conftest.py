import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="consultpay-tests-")

os.environ.setdefault("POSTGRES_DSN", f"sqlite:///{_DB_DIR}/payments.db")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("SWEEP_ENABLED", "false")
os.environ.setdefault("PHONEPE_MERCHANT_ID", "TESTMERCHANT")
os.environ.setdefault("PHONEPE_SALT_KEY", "test-salt-key")
os.environ.setdefault("PHONEPE_SALT_INDEX", "1")
os.environ.setdefault("PHONEPE_BASE_URL", "https://gateway.test")
os.environ.setdefault("PHONEPE_CALLBACK_BASE_URL", "https://api.consult.test")
os.environ.setdefault("PHONEPE_WEBHOOK_USERNAME", "hook-user")
os.environ.setdefault("PHONEPE_WEBHOOK_PASSWORD", "hook-pass")
os.environ.setdefault("FRONTEND_URL", "https://app.consult.test")

import hashlib  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402

from consultpay.common.db import Base, SessionLocal, engine  # noqa: E402
from consultpay.common.errors import GatewayUnavailable  # noqa: E402
from consultpay.common.logging import order_id_ctx  # noqa: E402
from consultpay.common.state_machine import PENDING  # noqa: E402
from consultpay.services.payments.credits import CreditLedger  # noqa: E402
from consultpay.services.payments.gateway import (  # noqa: E402
    STATE_CANCELLED,
    STATE_EXPIRED,
    STATE_FAILED,
    STATE_PENDING,
    STATE_SUCCESS,
    GatewaySession,
)
from consultpay.services.payments.models import PaymentAttempt  # noqa: E402
from consultpay.services.payments.service import (  # noqa: E402
    PaymentService,
    ReconciliationEngine,
    new_order_id,
)


WEBHOOK_AUTH = hashlib.sha256(b"hook-user:hook-pass").hexdigest()
GATEWAY_STATES = {STATE_PENDING, STATE_SUCCESS, STATE_FAILED, STATE_CANCELLED, STATE_EXPIRED}


class FakeGateway:
    """In-memory stand-in for the PhonePe adapter."""

    def __init__(self) -> None:
        self.states: dict[str, str] = {}
        self.sessions: list[tuple[str, int, str, str]] = []
        self.status_calls: list[str] = []
        self.status_log_order_ids: list[str] = []
        self.initiate_error: Exception | None = None
        self.status_error: Exception | None = None

    async def initiate(self, order_id, amount_minor, payer_id, payee_id):
        if self.initiate_error is not None:
            raise self.initiate_error
        self.sessions.append((order_id, amount_minor, payer_id, payee_id))
        return GatewaySession(order_id=order_id, redirect_url=f"https://pay.gateway.test/{order_id}")

    async def query_status(self, order_id):
        self.status_calls.append(order_id)
        self.status_log_order_ids.append(order_id_ctx.get())
        if self.status_error is not None:
            raise self.status_error
        state = self.states.get(order_id, STATE_PENDING)
        assert state in GATEWAY_STATES, f"query_status returns canonical states only, got {state}"
        return state


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield


@pytest.fixture
def reconciler():
    return ReconciliationEngine(SessionLocal)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def payment_service(reconciler, gateway):
    return PaymentService(SessionLocal, reconciler, gateway)


@pytest.fixture
def ledger():
    return CreditLedger(SessionLocal)


@pytest.fixture
def make_attempt():
    """Insert an attempt row directly and return it."""

    counter = {"n": 0}

    def _make(
        payer_id: str = "patient-a",
        payee_id: str = "derm-b",
        status: str = PENDING,
        consumed: bool = False,
        amount_minor: int = 50000,
        order_id: str | None = "generate",
        age_seconds: int = 0,
    ) -> PaymentAttempt:
        counter["n"] += 1
        created_at = datetime.now(timezone.utc) - timedelta(seconds=age_seconds) + timedelta(microseconds=counter["n"])
        attempt = PaymentAttempt(
            order_id=new_order_id() if order_id == "generate" else order_id,
            payer_id=payer_id,
            payee_id=payee_id,
            amount_minor=amount_minor,
            status=status,
            consumed=consumed,
            created_at=created_at,
            updated_at=created_at,
        )
        with SessionLocal() as db:
            db.add(attempt)
            db.commit()
        return attempt

    return _make


@pytest.fixture
def load_attempt():
    def _load(attempt_id: str) -> PaymentAttempt:
        with SessionLocal() as db:
            return db.get(PaymentAttempt, attempt_id)

    return _load


@pytest.fixture
def unavailable():
    return GatewayUnavailable("gateway timed out")
