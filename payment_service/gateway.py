"""Stripe PaymentIntent client.

Translates Stripe responses and errors into the service's own result types
and exception taxonomy. Holds no local state: every mutation of orders and
attempts goes through the state machine.
"""

import asyncio
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import stripe
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from payment_service.config import Settings
from payment_service.exceptions import GatewayNotFound, GatewayUnavailable, InvalidRequest
from payment_service.models import AttemptOutcome

log = structlog.get_logger(__name__)

# Errors worth another try: transport, throttling and provider-side faults
_TRANSIENT_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)

_STATUS_OUTCOMES = {
    "succeeded": AttemptOutcome.SUCCEEDED,
    "canceled": AttemptOutcome.CANCELLED,
}


@dataclass(frozen=True)
class PaymentIntentResult:
    gateway_reference: str
    client_secret: str


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def outcome_for_intent(intent) -> AttemptOutcome:
    status = getattr(intent, "status", None)
    if status in _STATUS_OUTCOMES:
        return _STATUS_OUTCOMES[status]
    # A declined confirmation drops the intent back to requires_payment_method
    if status == "requires_payment_method" and getattr(intent, "last_payment_error", None):
        return AttemptOutcome.FAILED
    return AttemptOutcome.PENDING


class StripeGatewayClient:
    def __init__(self, settings: Settings):
        self._api_key = settings.stripe_secret_key
        self._currency = settings.store_currency
        self._minimum_amount = settings.minimum_amount
        self._timeout = settings.gateway_timeout_seconds
        self._retry_attempts = settings.gateway_retry_attempts
        self._retry_wait_max = settings.gateway_retry_wait_max

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, api_key=self._api_key, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise GatewayUnavailable(f"Gateway call timed out after {self._timeout}s") from exc
        except _TRANSIENT_ERRORS as exc:
            raise GatewayUnavailable(f"{type(exc).__name__}: {exc}") from exc
        except stripe.StripeError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                raise GatewayNotFound(str(exc)) from exc
            if (getattr(exc, "http_status", None) or 0) >= 500:
                raise GatewayUnavailable(str(exc)) from exc
            raise InvalidRequest(str(exc)) from exc

    def _validate(self, amount: Decimal, currency: str):
        if not isinstance(amount, Decimal):
            amount = Decimal(str(amount))
        if not amount.is_finite() or amount < self._minimum_amount:
            raise InvalidRequest(f"Invalid amount {amount}")
        if currency.lower() != self._currency:
            raise InvalidRequest(f"Unsupported currency {currency}")
        return amount

    async def create_payment_intent(
        self, *, order_id: str, attempt_id: str, amount: Decimal, currency: str
    ) -> PaymentIntentResult:
        amount = self._validate(amount, currency)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=1, min=0, max=self._retry_wait_max),
            retry=retry_if_exception_type(GatewayUnavailable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                intent = await self._call(
                    stripe.PaymentIntent.create,
                    amount=to_minor_units(amount),
                    currency=self._currency,
                    automatic_payment_methods={"enabled": True},
                    metadata={"order_id": order_id, "attempt_id": attempt_id},
                    description=f"Payment for Order #{order_id}",
                    # Same key on every retry, so Stripe never creates two intents
                    idempotency_key=attempt_id,
                )
        log.info(
            "payment_intent_created",
            order_id=order_id,
            attempt_id=attempt_id,
            gateway_reference=intent.id,
        )
        return PaymentIntentResult(gateway_reference=intent.id, client_secret=intent.client_secret)

    async def query_status(self, gateway_reference: str) -> AttemptOutcome:
        intent = await self._call(stripe.PaymentIntent.retrieve, gateway_reference)
        outcome = outcome_for_intent(intent)
        log.info(
            "payment_intent_queried",
            gateway_reference=gateway_reference,
            gateway_status=getattr(intent, "status", None),
            outcome=outcome.value,
        )
        return outcome
