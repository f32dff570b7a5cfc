"""Payment store models.

`payment_attempts` is the source of truth for whether a consultation is paid
for; `payment_transitions` is the append-only audit trail of every status
change and the channel that caused it.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from consultpay.common.db import Base
from consultpay.common.state_machine import PENDING


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentAttempt(Base):
    """One attempt to collect a consultation fee through the gateway."""

    __tablename__ = "payment_attempts"
    __table_args__ = (
        Index("ix_payment_attempts_pair_credit", "payer_id", "payee_id", "status", "consumed"),
        Index("ix_payment_attempts_status_created_at", "status", "created_at"),
        CheckConstraint("NOT consumed OR status = 'PAID'", name="ck_payment_attempts_consumed_paid"),
    )

    attempt_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    # Legacy rows predate order ids, hence nullable + unique.
    order_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    payer_id: Mapped[str] = mapped_column(String, index=True)
    payee_id: Mapped[str] = mapped_column(String, index=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String, default=PENDING, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gateway_state: Mapped[str | None] = mapped_column(String, nullable=True)
    consumed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )


class PaymentTransition(Base):
    """Immutable audit row for one applied status change."""

    __tablename__ = "payment_transitions"

    transition_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    attempt_id: Mapped[str] = mapped_column(ForeignKey("payment_attempts.attempt_id"), index=True)
    order_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    gateway_state: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
