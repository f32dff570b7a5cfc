"""Payment reconciliation.

Every channel that learns something about a payment (webhook, browser
redirect, status poll, initiation failure, legacy mark-paid) funnels through
`ReconciliationEngine.apply`, which maps the signal to the state machine and
writes it with a compare-and-swap on `(attempt_id, status, state_version)`.
`PaymentService` owns the gateway-facing flows built on top of it.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import select, update

from consultpay.common.errors import (
    ConcurrentUpdateError,
    GatewayRejected,
    GatewayUnavailable,
    UnknownOrder,
)
from consultpay.common.logging import channel_ctx, logger, order_id_ctx
from consultpay.common.metrics import (
    payment_initiations_total,
    payment_signals_total,
    payment_transitions_total,
    sweep_checked_total,
    unknown_order_total,
)
from consultpay.common.state_machine import PAID, PENDING, next_status, normalize_outcome
from consultpay.services.payments.models import PaymentAttempt, PaymentTransition


CHANNEL_WEBHOOK = "webhook"
CHANNEL_REDIRECT = "redirect"
CHANNEL_POLL = "poll"
CHANNEL_INITIATION = "initiation"
CHANNEL_LEGACY = "legacy"

INDETERMINATE = "INDETERMINATE"


def new_order_id() -> str:
    return f"ord-{uuid4().hex}"


@dataclass
class TransitionResult:
    attempt: PaymentAttempt
    previous_status: str
    changed: bool


@dataclass
class PollResult:
    attempt: PaymentAttempt
    gateway_state: str | None
    indeterminate: bool


@dataclass
class SweepReport:
    checked: int = 0
    changed: int = 0
    indeterminate: int = 0
    unknown: int = 0
    errors: int = 0


class ReconciliationEngine:
    """Applies gateway outcome signals to the payment store."""

    max_cas_attempts = 5

    def __init__(self, session_factory, service_name: str = "payments") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def _load(self, db, order_id: str | None, payer_id: str | None, payee_id: str | None):
        if order_id is not None:
            stmt = select(PaymentAttempt).where(PaymentAttempt.order_id == order_id)
        else:
            # Legacy rows carry no order id; the newest one for the pair wins.
            stmt = (
                select(PaymentAttempt)
                .where(
                    PaymentAttempt.payer_id == payer_id,
                    PaymentAttempt.payee_id == payee_id,
                    PaymentAttempt.order_id.is_(None),
                )
                .order_by(PaymentAttempt.created_at.desc())
                .limit(1)
            )
        return db.execute(stmt.execution_options(populate_existing=True)).scalars().first()

    def get(self, order_id: str) -> PaymentAttempt:
        """Fetch one attempt by order id or raise `UnknownOrder`."""

        with self.session_factory() as db:
            attempt = self._load(db, order_id, None, None)
        if attempt is None:
            raise UnknownOrder(order_id)
        return attempt

    def apply(self, order_id: str, raw_state: str | None, channel: str) -> TransitionResult:
        """Apply one gateway signal for `order_id` arriving on `channel`."""

        return self._apply(raw_state, channel, order_id=order_id)

    def apply_legacy(
        self, payer_id: str, payee_id: str, raw_state: str | None, channel: str = CHANNEL_LEGACY
    ) -> TransitionResult:
        """Apply a signal to the newest order-less attempt of a pair."""

        return self._apply(raw_state, channel, payer_id=payer_id, payee_id=payee_id)

    def _apply(
        self,
        raw_state: str | None,
        channel: str,
        order_id: str | None = None,
        payer_id: str | None = None,
        payee_id: str | None = None,
    ) -> TransitionResult:
        outcome = normalize_outcome(raw_state)
        payment_signals_total.labels(service=self.service_name, channel=channel, outcome=outcome).inc()
        order_token = order_id_ctx.set(order_id or "")
        channel_token = channel_ctx.set(channel)
        try:
            for cas_attempt in range(1, self.max_cas_attempts + 1):
                with self.session_factory() as db:
                    attempt = self._load(db, order_id, payer_id, payee_id)
                    if attempt is None:
                        unknown_order_total.labels(service=self.service_name, channel=channel).inc()
                        logger.warning(
                            "unknown_order order_id=%s payer_id=%s payee_id=%s channel=%s state=%s",
                            order_id,
                            payer_id,
                            payee_id,
                            channel,
                            raw_state,
                        )
                        raise UnknownOrder(order_id, payer_id, payee_id)

                    current = attempt.status
                    target = next_status(current, raw_state)
                    if target is None:
                        logger.info(
                            "signal_noop order_id=%s status=%s channel=%s state=%s",
                            attempt.order_id,
                            current,
                            channel,
                            raw_state,
                        )
                        return TransitionResult(attempt=attempt, previous_status=current, changed=False)

                    version = attempt.state_version
                    result = db.execute(
                        update(PaymentAttempt)
                        .where(
                            PaymentAttempt.attempt_id == attempt.attempt_id,
                            PaymentAttempt.status == current,
                            PaymentAttempt.state_version == version,
                        )
                        .values(
                            status=target,
                            state_version=version + 1,
                            gateway_state=(raw_state or "").upper() or None,
                            updated_at=datetime.now(timezone.utc),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        db.rollback()
                        logger.info(
                            "transition_conflict order_id=%s expected_version=%s retry=%s",
                            attempt.order_id,
                            version,
                            cas_attempt,
                        )
                        continue

                    db.add(
                        PaymentTransition(
                            attempt_id=attempt.attempt_id,
                            order_id=attempt.order_id,
                            from_status=current,
                            to_status=target,
                            channel=channel,
                            gateway_state=raw_state,
                        )
                    )
                    db.commit()
                    db.refresh(attempt)

                payment_transitions_total.labels(
                    service=self.service_name, channel=channel, from_status=current, to_status=target
                ).inc()
                logger.info(
                    "transition_applied order_id=%s from=%s to=%s channel=%s",
                    attempt.order_id,
                    current,
                    target,
                    channel,
                )
                return TransitionResult(attempt=attempt, previous_status=current, changed=True)

            logger.error(
                "transition_conflict_exhausted order_id=%s channel=%s state=%s", order_id, channel, raw_state
            )
            raise ConcurrentUpdateError(f"could not apply {raw_state} to {order_id} after retries")
        finally:
            order_id_ctx.reset(order_token)
            channel_ctx.reset(channel_token)


class PaymentService:
    """Gateway-facing payment flows: initiation, polling and sweeps."""

    def __init__(self, session_factory, engine: ReconciliationEngine, gateway, service_name: str = "payments") -> None:
        self.session_factory = session_factory
        self.engine = engine
        self.gateway = gateway
        self.service_name = service_name

    async def initiate(self, amount_minor: int, payer_id: str, payee_id: str) -> tuple[PaymentAttempt, str]:
        """Record a PENDING attempt, then open a gateway session for it.

        The row exists before the gateway is called so a webhook racing the
        initiation response always finds its order.
        """

        attempt = PaymentAttempt(
            order_id=new_order_id(),
            payer_id=payer_id,
            payee_id=payee_id,
            amount_minor=amount_minor,
            status=PENDING,
            consumed=False,
        )
        with self.session_factory() as db:
            db.add(attempt)
            db.commit()

        try:
            session = await self.gateway.initiate(attempt.order_id, amount_minor, payer_id, payee_id)
        except (GatewayUnavailable, GatewayRejected) as exc:
            payment_initiations_total.labels(service=self.service_name, outcome=type(exc).__name__).inc()
            logger.error("initiation_failed order_id=%s error=%s", attempt.order_id, exc)
            self.engine.apply(attempt.order_id, "FAILED", CHANNEL_INITIATION)
            raise

        payment_initiations_total.labels(service=self.service_name, outcome="created").inc()
        logger.info(
            "payment_initiated order_id=%s payer_id=%s payee_id=%s amount_minor=%s",
            attempt.order_id,
            payer_id,
            payee_id,
            amount_minor,
        )
        return attempt, session.redirect_url

    async def poll(self, order_id: str) -> PollResult:
        """Refresh one attempt from the gateway.

        Paid attempts are final and answered from the store. Gateway errors
        leave the attempt untouched and report the outcome as indeterminate.
        """

        token = order_id_ctx.set(order_id)
        try:
            attempt = self.engine.get(order_id)
            if attempt.status == PAID:
                return PollResult(attempt=attempt, gateway_state=attempt.gateway_state, indeterminate=False)
            try:
                state = await self.gateway.query_status(order_id)
            except (GatewayUnavailable, GatewayRejected) as exc:
                logger.warning("poll_indeterminate order_id=%s error=%s", order_id, exc)
                return PollResult(attempt=attempt, gateway_state=INDETERMINATE, indeterminate=True)
            result = self.engine.apply(order_id, state, CHANNEL_POLL)
            return PollResult(attempt=result.attempt, gateway_state=state, indeterminate=False)
        finally:
            order_id_ctx.reset(token)

    async def handle_redirect(self, order_id: str, payer_id: str, payee_id: str, trust_redirect: bool):
        """Process a browser landing on the redirect URL.

        The payer/payee in the URL must match the stored attempt; a mismatch is
        reported exactly like an unknown order.
        """

        token = order_id_ctx.set(order_id)
        try:
            attempt = self.engine.get(order_id)
            if attempt.payer_id != payer_id or attempt.payee_id != payee_id:
                logger.warning(
                    "redirect_pair_mismatch order_id=%s payer_id=%s payee_id=%s", order_id, payer_id, payee_id
                )
                raise UnknownOrder(order_id)
            if trust_redirect:
                return self.engine.apply(order_id, "SUCCESS", CHANNEL_REDIRECT)
            return await self.poll(order_id)
        finally:
            order_id_ctx.reset(token)

    def stale_pending(self, limit: int, min_age_seconds: int) -> list[str]:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=min_age_seconds)
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(PaymentAttempt.order_id)
                    .where(
                        PaymentAttempt.status == PENDING,
                        PaymentAttempt.order_id.is_not(None),
                        PaymentAttempt.created_at <= cutoff,
                    )
                    .order_by(PaymentAttempt.created_at)
                    .limit(limit)
                ).scalars()
            )

    async def sweep(self, limit: int, min_age_seconds: int) -> SweepReport:
        """Poll the oldest pending attempts once each.

        A row that errors is counted and skipped; it never stops the rest of
        the batch.
        """

        report = SweepReport()
        for order_id in self.stale_pending(limit, min_age_seconds):
            report.checked += 1
            try:
                before = self.engine.get(order_id).status
                result = await self.poll(order_id)
            except UnknownOrder:
                report.unknown += 1
                sweep_checked_total.labels(service=self.service_name, result="unknown").inc()
                continue
            except ConcurrentUpdateError as exc:
                report.errors += 1
                sweep_checked_total.labels(service=self.service_name, result="error").inc()
                logger.warning("sweep_row_conflict order_id=%s error=%s", order_id, exc)
                continue
            except Exception:
                report.errors += 1
                sweep_checked_total.labels(service=self.service_name, result="error").inc()
                logger.exception("sweep_row_failed order_id=%s", order_id)
                continue
            if result.indeterminate:
                report.indeterminate += 1
                sweep_checked_total.labels(service=self.service_name, result="indeterminate").inc()
            elif result.attempt.status != before:
                report.changed += 1
                sweep_checked_total.labels(service=self.service_name, result="changed").inc()
            else:
                sweep_checked_total.labels(service=self.service_name, result="unchanged").inc()
        if report.checked:
            logger.info(
                "sweep_completed checked=%s changed=%s indeterminate=%s unknown=%s errors=%s",
                report.checked,
                report.changed,
                report.indeterminate,
                report.unknown,
                report.errors,
            )
        return report

    async def sweeper(self, interval_seconds: float, batch_size: int, min_age_seconds: int) -> None:
        """Continuously reconcile pending attempts the webhook never settled."""

        while True:
            try:
                await self.sweep(batch_size, min_age_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("sweep failed: %s", exc)
            await asyncio.sleep(interval_seconds)
