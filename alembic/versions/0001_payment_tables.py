"""orders, payment attempts, webhook ledger and payment reviews

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00

"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

ORDER_STATUSES = ("created", "payment_initiated", "paid", "payment_failed", "cancelled")
ATTEMPT_OUTCOMES = ("pending", "succeeded", "failed", "cancelled")


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("items", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*ORDER_STATUSES, name="orderstatus", native_enum=False, length=32),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_orders_id", "orders", ["id"])
    op.create_index("ix_orders_customer_id", "orders", ["customer_id"])

    op.create_table(
        "payment_attempts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("order_id", sa.String(64), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("gateway_reference", sa.String(255), nullable=True, unique=True),
        sa.Column(
            "outcome",
            sa.Enum(*ATTEMPT_OUTCOMES, name="attemptoutcome", native_enum=False, length=32),
            nullable=False,
        ),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("order_id", "sequence", name="uq_payment_attempts_order_sequence"),
    )
    op.create_index("ix_payment_attempts_order_id", "payment_attempts", ["order_id"])
    op.create_index(
        "ux_payment_attempts_one_success",
        "payment_attempts",
        ["order_id"],
        unique=True,
        postgresql_where=sa.text("outcome = 'succeeded'"),
        sqlite_where=sa.text("outcome = 'succeeded'"),
    )

    op.create_table(
        "webhook_events",
        sa.Column("dedup_key", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("gateway_reference", sa.String(255), nullable=True),
        sa.Column("outcome", sa.String(32), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_webhook_events_gateway_reference", "webhook_events", ["gateway_reference"])

    op.create_table(
        "payment_reviews",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.String(64), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("attempt_id", sa.String(64), sa.ForeignKey("payment_attempts.id"), nullable=False),
        sa.Column("gateway_reference", sa.String(255), nullable=True),
        sa.Column("dedup_key", sa.String(255), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_payment_reviews_order_id", "payment_reviews", ["order_id"])


def downgrade() -> None:
    op.drop_index("ix_payment_reviews_order_id", table_name="payment_reviews")
    op.drop_table("payment_reviews")
    op.drop_index("ix_webhook_events_gateway_reference", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index("ux_payment_attempts_one_success", table_name="payment_attempts")
    op.drop_index("ix_payment_attempts_order_id", table_name="payment_attempts")
    op.drop_table("payment_attempts")
    op.drop_index("ix_orders_customer_id", table_name="orders")
    op.drop_index("ix_orders_id", table_name="orders")
    op.drop_table("orders")
