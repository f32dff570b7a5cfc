"""CreditLedger claim and count semantics."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from consultpay.common.db import Base
from consultpay.common.errors import NoCreditAvailable
from consultpay.common.state_machine import FAILED, PAID, PENDING
from consultpay.services.payments.credits import CreditLedger
from consultpay.services.payments.models import PaymentAttempt


def test_claim_consumes_paid_row(ledger, make_attempt, load_attempt):
    attempt = make_attempt(status=PAID)

    claimed = ledger.claim_credit("patient-a", "derm-b")

    assert claimed.attempt_id == attempt.attempt_id
    assert claimed.consumed is True
    assert claimed.consumed_at is not None
    assert load_attempt(attempt.attempt_id).consumed is True


def test_second_claim_has_nothing_left(ledger, make_attempt):
    make_attempt(status=PAID)
    ledger.claim_credit("patient-a", "derm-b")

    with pytest.raises(NoCreditAvailable) as excinfo:
        ledger.claim_credit("patient-a", "derm-b")

    assert excinfo.value.payer_id == "patient-a"
    assert excinfo.value.payee_id == "derm-b"


@pytest.mark.parametrize("status", [PENDING, FAILED])
def test_unpaid_attempts_are_not_credits(ledger, make_attempt, status):
    make_attempt(status=status)

    with pytest.raises(NoCreditAvailable):
        ledger.claim_credit("patient-a", "derm-b")
    assert ledger.count_unconsumed("patient-a", "derm-b") == 0


def test_credits_are_scoped_to_the_pair(ledger, make_attempt):
    make_attempt(status=PAID, payee_id="derm-other")
    make_attempt(status=PAID, payer_id="patient-other")

    with pytest.raises(NoCreditAvailable):
        ledger.claim_credit("patient-a", "derm-b")
    assert ledger.count_unconsumed("patient-a", "derm-other") == 1


def test_claims_are_oldest_first(ledger, make_attempt):
    oldest = make_attempt(status=PAID, age_seconds=600)
    newest = make_attempt(status=PAID)
    middle = make_attempt(status=PAID, age_seconds=300)

    claimed = [ledger.claim_credit("patient-a", "derm-b").attempt_id for _ in range(3)]

    assert claimed == [oldest.attempt_id, middle.attempt_id, newest.attempt_id]


def test_count_ignores_consumed_rows(ledger, make_attempt):
    make_attempt(status=PAID)
    make_attempt(status=PAID)
    make_attempt(status=PAID, consumed=True)
    make_attempt(status=PENDING)

    assert ledger.count_unconsumed("patient-a", "derm-b") == 2
    ledger.claim_credit("patient-a", "derm-b")
    assert ledger.count_unconsumed("patient-a", "derm-b") == 1


def test_concurrent_claims_spend_a_single_credit_once(tmp_path):
    db_engine = create_engine(
        f"sqlite:///{tmp_path / 'claims.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(db_engine)
    factory = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)
    with factory() as db:
        db.add(PaymentAttempt(order_id="ord-only", payer_id="p", payee_id="d", amount_minor=50000, status=PAID))
        db.commit()

    ledger = CreditLedger(factory)
    workers = 8
    barrier = threading.Barrier(workers)

    def claim():
        barrier.wait()
        try:
            return ledger.claim_credit("p", "d").order_id
        except NoCreditAvailable:
            return None

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda _: claim(), range(workers)))

    assert results.count("ord-only") == 1
    assert results.count(None) == workers - 1
    assert ledger.count_unconsumed("p", "d") == 0
    db_engine.dispose()
