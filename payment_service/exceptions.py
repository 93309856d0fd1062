"""Error taxonomy for the payment service.

Every error carries the HTTP status it maps to and a message that is safe to
show to a storefront client. Gateway details stay in ``str(exc)`` for logs.
"""


class PaymentServiceError(Exception):
    status_code = 500
    code = "internal_error"
    public_message = "Unexpected payment error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)


class ValidationError(PaymentServiceError):
    status_code = 422
    code = "validation_error"
    public_message = "Invalid payment request"


class InvalidRequest(ValidationError):
    """The gateway refused the request as malformed. Not retryable."""

    code = "invalid_request"


class NotFoundError(PaymentServiceError):
    status_code = 404
    code = "not_found"
    public_message = "Not found"


class OrderNotFound(NotFoundError):
    code = "order_not_found"
    public_message = "Order not found"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class UnknownAttempt(NotFoundError):
    code = "unknown_attempt"
    public_message = "Payment attempt not found"

    def __init__(self, gateway_reference: str):
        self.gateway_reference = gateway_reference
        super().__init__(f"No payment attempt for gateway reference {gateway_reference}")


class ConflictError(PaymentServiceError):
    status_code = 409
    code = "conflict"
    public_message = "Order is not in a valid state for this operation"


class OrderNotEligible(ConflictError):
    code = "order_not_eligible"

    def __init__(self, order_id: str, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Order {order_id} not eligible: {reason}")


class ConflictingPayment(ConflictError):
    """A successful payment arrived that cannot be applied and needs review."""

    code = "conflicting_payment"
    public_message = "Payment flagged for manual review"

    def __init__(self, order_id: str, attempt_id: str, reason: str = "order is already paid"):
        self.order_id = order_id
        self.attempt_id = attempt_id
        super().__init__(f"Attempt {attempt_id} of order {order_id} flagged for review: {reason}")


class ConcurrentModification(ConflictError):
    code = "concurrent_modification"
    public_message = "Order was modified concurrently, please try again"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Concurrent modification of order {order_id}")


class TooManyAttempts(ConflictError):
    status_code = 429
    code = "too_many_attempts"
    public_message = "Too many payment attempts for this order"

    def __init__(self, order_id: str, attempts: int):
        self.order_id = order_id
        self.attempts = attempts
        super().__init__(f"Order {order_id} already has {attempts} payment attempts")


class GatewayError(PaymentServiceError):
    status_code = 502
    code = "gateway_error"
    public_message = "Payment provider error, please try again"
    retryable = False


class GatewayUnavailable(GatewayError):
    status_code = 503
    code = "gateway_unavailable"
    public_message = "Payment provider unavailable, please try again"
    retryable = True


class GatewayNotFound(GatewayError):
    status_code = 404
    code = "gateway_not_found"
    public_message = "Payment not found at provider"


class SignatureError(PaymentServiceError):
    status_code = 400
    code = "invalid_signature"
    public_message = "Invalid webhook signature"


class InvalidSignature(SignatureError):
    pass
