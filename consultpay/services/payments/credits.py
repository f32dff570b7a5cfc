"""Consultation credits: paid attempts not yet spent on a checkup request."""

from datetime import datetime, timezone

from sqlalchemy import func, select, update

from consultpay.common.errors import NoCreditAvailable
from consultpay.common.logging import logger
from consultpay.common.metrics import credit_claims_total
from consultpay.common.state_machine import PAID
from consultpay.services.payments.models import PaymentAttempt


class CreditLedger:
    """Counts and consumes paid attempts per (payer, payee) pair."""

    def __init__(self, session_factory, service_name: str = "payments") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def claim_credit(self, payer_id: str, payee_id: str) -> PaymentAttempt:
        """Atomically mark the oldest unused paid attempt as consumed.

        The outer `consumed IS false` guard makes the write conditional, so two
        claims racing for the same row cannot both succeed.
        """

        table = PaymentAttempt.__table__
        candidate = (
            select(table.c.attempt_id)
            .where(
                table.c.payer_id == payer_id,
                table.c.payee_id == payee_id,
                table.c.status == PAID,
                table.c.consumed.is_(False),
            )
            .order_by(table.c.created_at, table.c.attempt_id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        now = datetime.now(timezone.utc)
        with self.session_factory() as db:
            claimed_id = db.execute(
                update(table)
                .where(
                    table.c.attempt_id == candidate,
                    table.c.status == PAID,
                    table.c.consumed.is_(False),
                )
                .values(consumed=True, consumed_at=now, updated_at=now)
                .returning(table.c.attempt_id)
            ).scalar_one_or_none()
            db.commit()
            if claimed_id is None:
                credit_claims_total.labels(service=self.service_name, result="no_credit").inc()
                logger.info("no_credit_available payer_id=%s payee_id=%s", payer_id, payee_id)
                raise NoCreditAvailable(payer_id, payee_id)
            attempt = db.get(PaymentAttempt, claimed_id)

        credit_claims_total.labels(service=self.service_name, result="claimed").inc()
        logger.info(
            "credit_claimed order_id=%s payer_id=%s payee_id=%s", attempt.order_id, payer_id, payee_id
        )
        return attempt

    def count_unconsumed(self, payer_id: str, payee_id: str) -> int:
        """Best-effort number of credits the pair can still spend."""

        with self.session_factory() as db:
            return db.execute(
                select(func.count())
                .select_from(PaymentAttempt)
                .where(
                    PaymentAttempt.payer_id == payer_id,
                    PaymentAttempt.payee_id == payee_id,
                    PaymentAttempt.status == PAID,
                    PaymentAttempt.consumed.is_(False),
                )
            ).scalar_one()
