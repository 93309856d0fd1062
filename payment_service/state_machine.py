"""Order payment lifecycle.

``PaymentStateMachine`` is the only code that changes an order's status or
a payment attempt's outcome. Every mutation of one order runs under that
order's in-process lock and inside a single transaction that row-locks the
order and checks its version, so concurrent webhooks, retries and
reconciliation for the same order serialize while different orders proceed
independently.

Attempt lifecycle::

    pending -> succeeded | failed | cancelled

Order lifecycle::

    created -> payment_initiated -> paid | payment_failed
    payment_failed -> payment_initiated            (retry)
    created | payment_failed -> cancelled          (user cancellation)
"""

import asyncio
import enum
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from payment_service.exceptions import (
    ConcurrentModification,
    ConflictError,
    ConflictingPayment,
    GatewayError,
    GatewayNotFound,
    OrderNotEligible,
    OrderNotFound,
    TooManyAttempts,
    UnknownAttempt,
    ValidationError,
)
from payment_service.locks import OrderLocks
from payment_service.messaging import PAYMENT_EXCHANGE
from payment_service.models import (
    AttemptOutcome,
    Order,
    OrderStatus,
    OrderStatusHistory,
    PaymentAttempt,
    PaymentReview,
    WebhookEvent,
    utcnow,
)

log = structlog.get_logger(__name__)

ORDER_TRANSITIONS = {
    OrderStatus.CREATED: {OrderStatus.PAYMENT_INITIATED, OrderStatus.CANCELLED},
    OrderStatus.PAYMENT_INITIATED: {OrderStatus.PAID, OrderStatus.PAYMENT_FAILED},
    OrderStatus.PAYMENT_FAILED: {OrderStatus.PAYMENT_INITIATED, OrderStatus.CANCELLED},
    OrderStatus.PAID: set(),
    OrderStatus.CANCELLED: set(),
}

INITIATE_FROM = frozenset({OrderStatus.CREATED, OrderStatus.PAYMENT_FAILED})
RETRY_FROM = frozenset({OrderStatus.PAYMENT_FAILED})

OUTCOME_ORDER_STATUS = {
    AttemptOutcome.SUCCEEDED: OrderStatus.PAID,
    AttemptOutcome.FAILED: OrderStatus.PAYMENT_FAILED,
    AttemptOutcome.CANCELLED: OrderStatus.PAYMENT_FAILED,
}

OUTCOME_NOTES = {
    AttemptOutcome.SUCCEEDED: "payment succeeded",
    AttemptOutcome.FAILED: "payment failed",
    AttemptOutcome.CANCELLED: "payment cancelled",
}

OUTCOME_EVENTS = {
    AttemptOutcome.SUCCEEDED: ("payment.succeeded", "PaymentSucceeded"),
    AttemptOutcome.FAILED: ("payment.failed", "PaymentFailed"),
    AttemptOutcome.CANCELLED: ("payment.failed", "PaymentFailed"),
}


class ApplyResult(enum.Enum):
    APPLIED = "processed"
    DUPLICATE = "duplicate"
    ALREADY_RESOLVED = "already_resolved"


@dataclass(frozen=True)
class PaymentSession:
    order_id: str
    attempt_id: str
    gateway_reference: str
    client_secret: str


@dataclass(frozen=True)
class _Applied:
    result: ApplyResult
    attempt_id: str
    amount: Decimal | None = None
    conflict: bool = False
    review_reason: str | None = None


class _DuplicateEvent(Exception):
    pass


def client_status(status: OrderStatus) -> str:
    """Collapse an order status into what the storefront shows."""
    if status is OrderStatus.PAID:
        return "success"
    if status in (OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED):
        return "failed"
    return "pending"


class PaymentStateMachine:
    def __init__(self, session_factory, gateway, settings, publisher=None, locks=None):
        self._session_factory = session_factory
        self._gateway = gateway
        self._settings = settings
        self._publisher = publisher
        self._locks = locks if locks is not None else OrderLocks()

    # ------------------------------------------------------------------
    # helpers

    async def _load_order(self, session, order_id: str, for_update: bool = False) -> Order:
        stmt = select(Order).where(Order.id == order_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        order = (await session.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        return order

    @staticmethod
    def _transition(order: Order, target: OrderStatus, note: str):
        if target not in ORDER_TRANSITIONS[order.status]:
            raise OrderNotEligible(
                order.id, f"cannot move from {order.status.value} to {target.value}"
            )
        order.status = target
        order.updated_at = utcnow()
        order.history.append(OrderStatusHistory(status=target, note=note, created_at=order.updated_at))

    def _resolve(self, order: Order, attempt: PaymentAttempt, outcome: AttemptOutcome, reason=None):
        note = f"attempt abandoned: {reason}" if reason else OUTCOME_NOTES[outcome]
        self._transition(order, OUTCOME_ORDER_STATUS[outcome], note)
        attempt.outcome = outcome
        attempt.resolved_at = utcnow()
        if reason:
            attempt.failure_reason = reason
        if outcome is AttemptOutcome.SUCCEEDED:
            order.paid_at = attempt.resolved_at

    async def _publish(self, routing_key: str, event_type: str, **data):
        if self._publisher is None:
            return
        await self._publisher(
            PAYMENT_EXCHANGE,
            routing_key,
            {
                "event_id": str(uuid4()),
                "event_type": event_type,
                "timestamp": utcnow().isoformat(),
                **data,
            },
        )

    # ------------------------------------------------------------------
    # initiation

    async def initiate(self, order_id: str, eligible=INITIATE_FROM) -> PaymentSession:
        attempt_id, amount, currency = await self._open_attempt(order_id, eligible)
        try:
            intent = await self._gateway.create_payment_intent(
                order_id=order_id, attempt_id=attempt_id, amount=amount, currency=currency
            )
        except (Exception, asyncio.CancelledError) as exc:
            if isinstance(exc, GatewayError):
                reason = exc.public_message
            elif isinstance(exc, asyncio.CancelledError):
                reason = "payment initiation interrupted"
            else:
                reason = "payment initiation failed"
            log.warning(
                "payment_initiation_failed",
                order_id=order_id,
                attempt_id=attempt_id,
                error=repr(exc),
            )
            # Shielded so a cancelled request still releases the order
            await asyncio.shield(self._abandon_attempt(order_id, attempt_id, reason))
            raise
        await self._record_reference(order_id, attempt_id, intent.gateway_reference)
        return PaymentSession(
            order_id=order_id,
            attempt_id=attempt_id,
            gateway_reference=intent.gateway_reference,
            client_secret=intent.client_secret,
        )

    async def _open_attempt(self, order_id: str, eligible):
        async with self._locks.hold(order_id):
            async with self._session_factory() as session:
                try:
                    async with session.begin():
                        order = await self._load_order(session, order_id, for_update=True)
                        if any(a.outcome is AttemptOutcome.PENDING for a in order.attempts):
                            raise OrderNotEligible(order_id, "a payment attempt is already pending")
                        if order.status not in eligible:
                            raise OrderNotEligible(order_id, f"order is {order.status.value}")
                        if len(order.attempts) >= self._settings.max_payment_attempts:
                            raise TooManyAttempts(order_id, len(order.attempts))
                        attempt = PaymentAttempt(
                            id=str(uuid4()),
                            sequence=len(order.attempts) + 1,
                            outcome=AttemptOutcome.PENDING,
                            created_at=utcnow(),
                        )
                        order.attempts.append(attempt)
                        self._transition(
                            order, OrderStatus.PAYMENT_INITIATED, f"payment attempt {attempt.sequence} opened"
                        )
                except (IntegrityError, StaleDataError) as exc:
                    raise ConcurrentModification(order_id) from exc
        log.info(
            "payment_attempt_opened",
            order_id=order_id,
            attempt_id=attempt.id,
            sequence=attempt.sequence,
        )
        return attempt.id, order.amount, order.currency

    async def _record_reference(self, order_id: str, attempt_id: str, gateway_reference: str):
        async with self._locks.hold(order_id):
            async with self._session_factory() as session:
                async with session.begin():
                    attempt = await session.get(PaymentAttempt, attempt_id, with_for_update=True)
                    attempt.gateway_reference = gateway_reference

    async def _abandon_attempt(self, order_id: str, attempt_id: str, reason: str) -> bool:
        async with self._locks.hold(order_id):
            async with self._session_factory() as session:
                async with session.begin():
                    attempt = await session.get(
                        PaymentAttempt, attempt_id, with_for_update=True, populate_existing=True
                    )
                    if attempt is None or attempt.outcome.is_terminal:
                        return False
                    order = await self._load_order(session, order_id, for_update=True)
                    self._resolve(order, attempt, AttemptOutcome.CANCELLED, reason)
        log.info("payment_attempt_abandoned", order_id=order_id, attempt_id=attempt_id, reason=reason)
        await self._publish(
            "payment.failed", "PaymentFailed", order_id=order_id, attempt_id=attempt_id, reason=reason
        )
        return True

    # ------------------------------------------------------------------
    # outcomes

    async def apply_outcome(
        self,
        gateway_reference: str,
        outcome: AttemptOutcome,
        dedup_key: str,
        event_type: str = "payment_outcome",
    ) -> ApplyResult:
        """Apply a terminal gateway outcome exactly once per dedup key.

        Raises ``UnknownAttempt`` when no attempt carries ``gateway_reference``
        and ``ConflictingPayment`` (after recording a review) when a success
        arrives for an attempt that already failed or was cancelled, or for an
        order that is already paid.
        """
        if not outcome.is_terminal:
            raise ValidationError(f"Outcome {outcome.value} is not terminal")
        bound = log.bind(gateway_reference=gateway_reference, dedup_key=dedup_key, outcome=outcome.value)

        async with self._session_factory() as session:
            if await session.get(WebhookEvent, dedup_key) is not None:
                bound.info("payment_event_duplicate")
                return ApplyResult.DUPLICATE
            order_id = (
                await session.execute(
                    select(PaymentAttempt.order_id).where(
                        PaymentAttempt.gateway_reference == gateway_reference
                    )
                )
            ).scalar_one_or_none()
        if order_id is None:
            bound.warning("payment_event_unknown_attempt")
            raise UnknownAttempt(gateway_reference)

        bound = bound.bind(order_id=order_id)
        async with self._locks.hold(order_id):
            async with self._session_factory() as session:
                try:
                    async with session.begin():
                        applied = await self._apply_locked(
                            session, order_id, gateway_reference, outcome, dedup_key, event_type
                        )
                except _DuplicateEvent:
                    bound.info("payment_event_duplicate")
                    return ApplyResult.DUPLICATE
                except StaleDataError as exc:
                    raise ConcurrentModification(order_id) from exc

        if applied.conflict:
            bound.error("payment_conflict_flagged", attempt_id=applied.attempt_id, reason=applied.review_reason)
            await self._publish(
                "payment.conflict",
                "PaymentConflict",
                order_id=order_id,
                attempt_id=applied.attempt_id,
                gateway_reference=gateway_reference,
            )
            raise ConflictingPayment(order_id, applied.attempt_id, applied.review_reason)

        if applied.result is ApplyResult.ALREADY_RESOLVED:
            bound.info("payment_event_already_resolved", attempt_id=applied.attempt_id)
            return applied.result

        bound.info("payment_outcome_applied", attempt_id=applied.attempt_id)
        routing_key, event_name = OUTCOME_EVENTS[outcome]
        await self._publish(
            routing_key,
            event_name,
            order_id=order_id,
            attempt_id=applied.attempt_id,
            amount=str(applied.amount),
        )
        return applied.result

    async def _apply_locked(self, session, order_id, gateway_reference, outcome, dedup_key, event_type):
        # The ledger insert is the duplicate check: a concurrent delivery of
        # the same event fails here on the primary key.
        session.add(
            WebhookEvent(
                dedup_key=dedup_key,
                event_type=event_type,
                gateway_reference=gateway_reference,
                outcome=outcome.value,
                processed_at=utcnow(),
            )
        )
        try:
            await session.flush()
        except IntegrityError:
            raise _DuplicateEvent(dedup_key) from None

        attempt = (
            await session.execute(
                select(PaymentAttempt)
                .where(PaymentAttempt.gateway_reference == gateway_reference)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        if attempt.outcome is AttemptOutcome.SUCCEEDED or (
            attempt.outcome.is_terminal and outcome is not AttemptOutcome.SUCCEEDED
        ):
            return _Applied(ApplyResult.ALREADY_RESOLVED, attempt.id)

        order = await self._load_order(session, order_id, for_update=True)
        review_reason = None
        if outcome is AttemptOutcome.SUCCEEDED:
            # A success against a settled attempt or a paid order goes to review
            if attempt.outcome.is_terminal:
                review_reason = f"successful payment reported for a {attempt.outcome.value} attempt"
            elif order.status is OrderStatus.PAID or any(
                a.outcome is AttemptOutcome.SUCCEEDED for a in order.attempts
            ):
                review_reason = "second successful payment for an order that is already paid"
        if review_reason:
            session.add(
                PaymentReview(
                    order_id=order_id,
                    attempt_id=attempt.id,
                    gateway_reference=gateway_reference,
                    dedup_key=dedup_key,
                    reason=review_reason,
                    created_at=utcnow(),
                )
            )
            return _Applied(
                ApplyResult.APPLIED, attempt.id, order.amount, conflict=True, review_reason=review_reason
            )

        if order.status is OrderStatus.PAID:
            # A stray attempt on a paid order resolves without touching the order
            attempt.outcome = outcome
            attempt.resolved_at = utcnow()
            return _Applied(ApplyResult.ALREADY_RESOLVED, attempt.id, order.amount)

        self._resolve(order, attempt, outcome)
        return _Applied(ApplyResult.APPLIED, attempt.id, order.amount)

    # ------------------------------------------------------------------
    # cancellation

    async def cancel(self, order_id: str) -> Order:
        async with self._locks.hold(order_id):
            async with self._session_factory() as session:
                try:
                    async with session.begin():
                        order = await self._load_order(session, order_id, for_update=True)
                        if any(a.outcome is AttemptOutcome.PENDING for a in order.attempts):
                            raise OrderNotEligible(order_id, "a payment attempt is pending")
                        self._transition(order, OrderStatus.CANCELLED, "cancelled by customer")
                        order.cancelled_at = utcnow()
                except StaleDataError as exc:
                    raise ConcurrentModification(order_id) from exc
        log.info("order_cancelled", order_id=order_id)
        return order

    # ------------------------------------------------------------------
    # reconciliation

    async def payment_status(self, order_id: str) -> Order:
        """Reconcile a stale pending attempt if needed, then read the order."""
        await self.reconcile(order_id)
        async with self._session_factory() as session:
            return await self._load_order(session, order_id)

    async def reconcile(self, order_id: str):
        async with self._session_factory() as session:
            order = await self._load_order(session, order_id)
        latest = order.attempts[-1] if order.attempts else None
        if latest is None or latest.outcome.is_terminal:
            return None
        return await self._reconcile_attempt(latest)

    async def _reconcile_attempt(self, attempt: PaymentAttempt):
        if utcnow() - attempt.created_at < timedelta(seconds=self._settings.reconcile_after_seconds):
            return None
        if attempt.gateway_reference is None:
            await self._abandon_attempt(
                attempt.order_id, attempt.id, "gateway reference was never recorded"
            )
            return AttemptOutcome.CANCELLED

        reference = attempt.gateway_reference
        try:
            outcome = await self._gateway.query_status(reference)
        except GatewayNotFound:
            await self._abandon_attempt(attempt.order_id, attempt.id, "unknown to payment provider")
            return AttemptOutcome.CANCELLED
        except GatewayError as exc:
            # Stays pending; the next sweep tries again
            log.warning("reconcile_gateway_failed", gateway_reference=reference, error=str(exc))
            return None
        if not outcome.is_terminal:
            return None

        try:
            await self.apply_outcome(
                reference, outcome, f"reconcile:{reference}:{outcome.value}", "reconciliation"
            )
        except ConflictingPayment:
            log.warning("reconcile_conflict_flagged", gateway_reference=reference)
        return outcome

    async def sweep_pending(self, limit: int = 100) -> int:
        """Reconcile pending attempts older than the reconciliation window."""
        cutoff = utcnow() - timedelta(seconds=self._settings.reconcile_after_seconds)
        under_review = select(PaymentReview.attempt_id).where(PaymentReview.resolved.is_(False))
        async with self._session_factory() as session:
            attempts = (
                await session.execute(
                    select(PaymentAttempt)
                    .where(
                        PaymentAttempt.outcome == AttemptOutcome.PENDING,
                        PaymentAttempt.created_at <= cutoff,
                        PaymentAttempt.id.not_in(under_review),
                    )
                    .order_by(PaymentAttempt.created_at)
                    .limit(limit)
                )
            ).scalars().all()

        resolved = 0
        for attempt in attempts:
            try:
                if await self._reconcile_attempt(attempt) is not None:
                    resolved += 1
            except (ConflictError, SQLAlchemyError) as exc:
                log.error("reconcile_attempt_failed", attempt_id=attempt.id, error=str(exc))
        log.info("reconcile_sweep_finished", examined=len(attempts), resolved=resolved)
        return resolved

    async def open_reviews(self) -> list[PaymentReview]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentReview)
                .where(PaymentReview.resolved.is_(False))
                .order_by(PaymentReview.created_at)
            )
            return list(result.scalars().all())
