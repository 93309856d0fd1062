from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship, validates
from datetime import datetime, timezone
import enum

from payment_service.database import Base
from payment_service.exceptions import ValidationError


def utcnow() -> datetime:
    # Naive UTC; SQLite has no timezone-aware column type
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderStatus(enum.Enum):
    CREATED = "created"
    PAYMENT_INITIATED = "payment_initiated"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"


class AttemptOutcome(enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not AttemptOutcome.PENDING


def _enum_column(enum_cls):
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, index=True)
    customer_id = Column(String(64), index=True, nullable=False)
    items = Column(Text, nullable=False)  # JSON-encoded line items
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(_enum_column(OrderStatus), default=OrderStatus.CREATED, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    attempts = relationship(
        "PaymentAttempt",
        back_populates="order",
        order_by="PaymentAttempt.sequence",
        lazy="selectin",
    )
    history = relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="OrderStatusHistory.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @validates("amount", "currency")
    def _freeze_after_initiation(self, key, value):
        current = getattr(self, key)
        if (
            current is not None
            and current != value
            and self.status not in (None, OrderStatus.CREATED)
        ):
            raise ValidationError(f"Order {key} cannot change once payment has started")
        return value


class OrderStatusHistory(Base):
    """Append-only audit of order status changes."""

    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.id"), index=True, nullable=False)
    status = Column(_enum_column(OrderStatus), nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    order = relationship("Order", back_populates="history")


class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"

    id = Column(String(64), primary_key=True)
    order_id = Column(String(64), ForeignKey("orders.id"), index=True, nullable=False)
    sequence = Column(Integer, nullable=False)
    gateway_reference = Column(String(255), unique=True, nullable=True)
    outcome = Column(_enum_column(AttemptOutcome), default=AttemptOutcome.PENDING, nullable=False)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="attempts")

    __table_args__ = (
        UniqueConstraint("order_id", "sequence", name="uq_payment_attempts_order_sequence"),
        # At most one successful attempt per order
        Index(
            "ux_payment_attempts_one_success",
            "order_id",
            unique=True,
            postgresql_where=text("outcome = 'succeeded'"),
            sqlite_where=text("outcome = 'succeeded'"),
        ),
    )


class WebhookEvent(Base):
    """Idempotency ledger. The primary key is the gateway's dedup key."""

    __tablename__ = "webhook_events"

    dedup_key = Column(String(255), primary_key=True)
    event_type = Column(String(128), nullable=False)
    gateway_reference = Column(String(255), index=True, nullable=True)
    outcome = Column(String(32), nullable=True)
    processed_at = Column(DateTime, default=utcnow, nullable=False)


class PaymentReview(Base):
    __tablename__ = "payment_reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.id"), index=True, nullable=False)
    attempt_id = Column(String(64), ForeignKey("payment_attempts.id"), nullable=False)
    gateway_reference = Column(String(255), nullable=True)
    dedup_key = Column(String(255), nullable=True)
    reason = Column(Text, nullable=False)
    resolved = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
