import structlog
from sqlalchemy import select

from payment_service.exceptions import OrderNotEligible, OrderNotFound, TooManyAttempts
from payment_service.models import AttemptOutcome, Order, OrderStatus
from payment_service.state_machine import RETRY_FROM, PaymentSession, PaymentStateMachine

log = structlog.get_logger(__name__)


class RetryCoordinator:
    """Re-attempts payment for an order whose last attempt failed.

    Failed attempts are kept as history; a retry always opens a new attempt
    on the same order. The checks here fail fast without taking the order
    lock; ``PaymentStateMachine.initiate`` repeats them under the lock.
    """

    def __init__(self, state_machine: PaymentStateMachine, session_factory, settings):
        self._state_machine = state_machine
        self._session_factory = session_factory
        self._max_attempts = settings.max_payment_attempts

    async def retry(self, order_id: str) -> PaymentSession:
        async with self._session_factory() as session:
            order = (
                await session.execute(select(Order).where(Order.id == order_id))
            ).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        if order.status is not OrderStatus.PAYMENT_FAILED:
            raise OrderNotEligible(order_id, f"order is {order.status.value}, not payment_failed")
        if any(a.outcome is AttemptOutcome.PENDING for a in order.attempts):
            raise OrderNotEligible(order_id, "a payment attempt is already pending")
        if len(order.attempts) >= self._max_attempts:
            log.warning("payment_retry_ceiling_reached", order_id=order_id, attempts=len(order.attempts))
            raise TooManyAttempts(order_id, len(order.attempts))

        log.info("payment_retry_requested", order_id=order_id, previous_attempts=len(order.attempts))
        return await self._state_machine.initiate(order_id, eligible=RETRY_FROM)
