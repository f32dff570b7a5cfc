"""ReconciliationEngine behavior against a real (SQLite) store."""

import pytest
from sqlalchemy import select, update

from consultpay.common.db import SessionLocal
from consultpay.common.errors import UnknownOrder
from consultpay.common.state_machine import FAILED, PAID, PENDING
from consultpay.services.payments.models import PaymentAttempt, PaymentTransition
from consultpay.services.payments.service import (
    CHANNEL_LEGACY,
    CHANNEL_POLL,
    CHANNEL_REDIRECT,
    CHANNEL_WEBHOOK,
)


def _transitions(order_id):
    with SessionLocal() as db:
        return db.execute(
            select(PaymentTransition).where(PaymentTransition.order_id == order_id)
        ).scalars().all()


def test_success_marks_paid(reconciler, make_attempt):
    attempt = make_attempt()

    result = reconciler.apply(attempt.order_id, "COMPLETED", CHANNEL_WEBHOOK)

    assert result.changed
    assert result.previous_status == PENDING
    assert result.attempt.status == PAID
    assert result.attempt.state_version == 1


def test_success_twice_is_idempotent(reconciler, make_attempt, load_attempt):
    attempt = make_attempt()

    first = reconciler.apply(attempt.order_id, "SUCCESS", CHANNEL_WEBHOOK)
    second = reconciler.apply(attempt.order_id, "SUCCESS", CHANNEL_POLL)

    assert first.changed
    assert not second.changed
    stored = load_attempt(attempt.attempt_id)
    assert stored.status == PAID
    assert stored.state_version == 1
    assert len(_transitions(attempt.order_id)) == 1


@pytest.mark.parametrize("channel", [CHANNEL_WEBHOOK, CHANNEL_POLL, CHANNEL_REDIRECT])
@pytest.mark.parametrize("state", ["FAILED", "CANCELLED", "EXPIRED"])
def test_failure_never_downgrades_paid(reconciler, make_attempt, load_attempt, channel, state):
    attempt = make_attempt()
    reconciler.apply(attempt.order_id, "COMPLETED", CHANNEL_WEBHOOK)

    result = reconciler.apply(attempt.order_id, state, channel)

    assert not result.changed
    assert load_attempt(attempt.attempt_id).status == PAID


def test_failure_then_success_supersedes(reconciler, make_attempt, load_attempt):
    attempt = make_attempt()

    reconciler.apply(attempt.order_id, "FAILED", CHANNEL_WEBHOOK)
    assert load_attempt(attempt.attempt_id).status == FAILED

    result = reconciler.apply(attempt.order_id, "COMPLETED", CHANNEL_WEBHOOK)

    assert result.changed
    assert result.previous_status == FAILED
    assert load_attempt(attempt.attempt_id).status == PAID
    history = [(t.from_status, t.to_status) for t in _transitions(attempt.order_id)]
    assert sorted(history) == sorted([(PENDING, FAILED), (FAILED, PAID)])


def test_pending_signal_is_noop(reconciler, make_attempt, load_attempt):
    attempt = make_attempt()

    result = reconciler.apply(attempt.order_id, "PAYMENT_PENDING", CHANNEL_POLL)

    assert not result.changed
    assert load_attempt(attempt.attempt_id).status == PENDING
    assert _transitions(attempt.order_id) == []


def test_unknown_order_leaves_store_unmodified(reconciler, make_attempt, load_attempt):
    attempt = make_attempt()

    with pytest.raises(UnknownOrder) as excinfo:
        reconciler.apply("ord-does-not-exist", "COMPLETED", CHANNEL_WEBHOOK)

    assert excinfo.value.order_id == "ord-does-not-exist"
    assert load_attempt(attempt.attempt_id).status == PENDING
    with SessionLocal() as db:
        assert db.execute(select(PaymentTransition)).scalars().all() == []


def test_transition_records_channel_and_raw_state(reconciler, make_attempt):
    attempt = make_attempt()

    reconciler.apply(attempt.order_id, "completed", CHANNEL_REDIRECT)

    [transition] = _transitions(attempt.order_id)
    assert transition.channel == CHANNEL_REDIRECT
    assert transition.gateway_state == "completed"
    assert transition.attempt_id == attempt.attempt_id


def test_legacy_pair_lookup_uses_newest_orderless_row(reconciler, make_attempt, load_attempt):
    older = make_attempt(order_id=None)
    newer = make_attempt(order_id=None)
    with_order = make_attempt()

    result = reconciler.apply_legacy("patient-a", "derm-b", "SUCCESS")

    assert result.changed
    assert result.attempt.attempt_id == newer.attempt_id
    assert load_attempt(older.attempt_id).status == PENDING
    assert load_attempt(with_order.attempt_id).status == PENDING
    with SessionLocal() as db:
        [transition] = db.execute(select(PaymentTransition)).scalars().all()
    assert transition.channel == CHANNEL_LEGACY


def test_legacy_lookup_without_rows_is_unknown(reconciler, make_attempt):
    make_attempt()

    with pytest.raises(UnknownOrder):
        reconciler.apply_legacy("patient-a", "derm-b", "SUCCESS")


def test_lost_race_is_retried_against_fresh_state(reconciler, make_attempt, load_attempt, monkeypatch):
    """A webhook confirming payment lands between a poll's read and its write."""

    attempt = make_attempt()
    original_load = reconciler._load
    calls = {"n": 0}

    def racing_load(db, order_id, payer_id, payee_id):
        loaded = original_load(db, order_id, payer_id, payee_id)
        calls["n"] += 1
        if calls["n"] == 1:
            with SessionLocal() as other:
                other.execute(
                    update(PaymentAttempt)
                    .where(PaymentAttempt.attempt_id == attempt.attempt_id)
                    .values(status=PAID, state_version=PaymentAttempt.state_version + 1)
                )
                other.commit()
        return loaded

    monkeypatch.setattr(reconciler, "_load", racing_load)

    result = reconciler.apply(attempt.order_id, "EXPIRED", CHANNEL_POLL)

    assert calls["n"] == 2
    assert not result.changed
    assert load_attempt(attempt.attempt_id).status == PAID
