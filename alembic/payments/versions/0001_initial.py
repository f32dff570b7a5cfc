"""initial payments schema

Revision ID: 0001_payments
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_payments"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payment_attempts",
        sa.Column("attempt_id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("payer_id", sa.String(), nullable=False),
        sa.Column("payee_id", sa.String(), nullable=False),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("gateway_state", sa.String(), nullable=True),
        sa.Column("consumed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("attempt_id"),
        sa.UniqueConstraint("order_id"),
        # A consumed credit must have been paid.
        sa.CheckConstraint("NOT consumed OR status = 'PAID'", name="ck_payment_attempts_consumed_paid"),
    )
    op.create_index("ix_payment_attempts_payer_id", "payment_attempts", ["payer_id"])
    op.create_index("ix_payment_attempts_payee_id", "payment_attempts", ["payee_id"])
    op.create_index("ix_payment_attempts_status", "payment_attempts", ["status"])
    op.create_index(
        "ix_payment_attempts_pair_credit",
        "payment_attempts",
        ["payer_id", "payee_id", "status", "consumed"],
    )
    op.create_index(
        "ix_payment_attempts_status_created_at",
        "payment_attempts",
        ["status", "created_at"],
    )

    op.create_table(
        "payment_transitions",
        sa.Column("transition_id", sa.String(), nullable=False),
        sa.Column("attempt_id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("from_status", sa.String(), nullable=True),
        sa.Column("to_status", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("gateway_state", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["attempt_id"], ["payment_attempts.attempt_id"]),
        sa.PrimaryKeyConstraint("transition_id"),
    )
    op.create_index("ix_payment_transitions_attempt_id", "payment_transitions", ["attempt_id"])
    op.create_index("ix_payment_transitions_order_id", "payment_transitions", ["order_id"])


def downgrade() -> None:
    op.drop_index("ix_payment_transitions_order_id", table_name="payment_transitions")
    op.drop_index("ix_payment_transitions_attempt_id", table_name="payment_transitions")
    op.drop_table("payment_transitions")
    op.drop_index("ix_payment_attempts_status_created_at", table_name="payment_attempts")
    op.drop_index("ix_payment_attempts_pair_credit", table_name="payment_attempts")
    op.drop_index("ix_payment_attempts_status", table_name="payment_attempts")
    op.drop_index("ix_payment_attempts_payee_id", table_name="payment_attempts")
    op.drop_index("ix_payment_attempts_payer_id", table_name="payment_attempts")
    op.drop_table("payment_attempts")
