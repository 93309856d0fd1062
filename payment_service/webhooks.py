"""Inbound gateway notifications.

The signature is checked against the shared webhook secret before any field
of the body is read. Verified payment events are handed to the state
machine; the returned ``WebhookAck`` tells the gateway whether to redeliver:

* 2xx for anything processed, already seen, foreign or unfixable by
  redelivery (duplicates, unknown attempts, flagged conflicts);
* 400 for a bad signature or malformed body;
* 503 for internal failures, so the gateway delivers the event again later.
"""

import stripe
import structlog
from pydantic import ValidationError as SchemaError
from sqlalchemy.exc import SQLAlchemyError

from payment_service.exceptions import (
    ConcurrentModification,
    ConflictError,
    ConflictingPayment,
    GatewayError,
    InvalidSignature,
    UnknownAttempt,
    ValidationError,
)
from payment_service.models import AttemptOutcome
from payment_service.schemas import GatewayEvent, WebhookAck

log = structlog.get_logger(__name__)

EVENT_OUTCOMES = {
    "payment_intent.succeeded": AttemptOutcome.SUCCEEDED,
    "payment_intent.payment_failed": AttemptOutcome.FAILED,
    "payment_intent.canceled": AttemptOutcome.CANCELLED,
}


class WebhookHandler:
    def __init__(self, state_machine, settings):
        self._state_machine = state_machine
        self._secret = settings.stripe_webhook_secret
        self._tolerance = settings.webhook_tolerance_seconds

    def verify(self, payload: bytes, signature: str | None) -> GatewayEvent:
        if not self._secret:
            raise InvalidSignature("webhook secret is not configured")
        if not signature:
            raise InvalidSignature("missing signature header")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidSignature("payload is not valid UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(body, signature, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature(str(exc)) from exc
        try:
            return GatewayEvent.model_validate_json(body)
        except SchemaError as exc:
            raise ValidationError(f"malformed gateway event: {exc.error_count()} errors") from exc

    async def handle(self, payload: bytes, signature: str | None) -> WebhookAck:
        try:
            event = self.verify(payload, signature)
        except InvalidSignature as exc:
            log.warning("webhook_signature_invalid", error=str(exc))
            return WebhookAck(status_code=400, received=False, status="invalid_signature")
        except ValidationError as exc:
            log.warning("webhook_malformed", error=str(exc))
            return WebhookAck(status_code=400, received=False, status="malformed_event")

        bound = log.bind(event_id=event.id, event_type=event.type)
        outcome = EVENT_OUTCOMES.get(event.type)
        if outcome is None:
            bound.info("webhook_ignored")
            return WebhookAck(status="ignored")

        try:
            result = await self._state_machine.apply_outcome(
                event.data.object.id, outcome, event.id, event.type
            )
        except UnknownAttempt:
            return WebhookAck(status="unknown_attempt")
        except ConflictingPayment:
            return WebhookAck(status="conflict")
        except (ConcurrentModification, GatewayError, SQLAlchemyError) as exc:
            bound.error("webhook_processing_failed", error=str(exc), error_type=type(exc).__name__)
            return WebhookAck(status_code=503, received=False, status="retry")
        except ConflictError as exc:
            bound.error("webhook_rejected", error=str(exc))
            return WebhookAck(status="rejected")

        bound.info("webhook_processed", result=result.value)
        return WebhookAck(status=result.value)
