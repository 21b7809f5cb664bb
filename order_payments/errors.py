"""
Error taxonomy for the payment-hold core.

Every error may carry the affected order's current view (`order`) so callers
can report the unchanged state alongside the failure.
"""

from typing import Any, Optional


class PaymentError(Exception):
    kind = "payment_error"
    retryable = False

    def __init__(self, message: str, *, order: Any = None, body: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.order = order
        self.body = body


class InvalidRequest(PaymentError):
    """Caller error; never retried."""
    kind = "invalid_request"


class OrderNotFound(InvalidRequest):
    kind = "order_not_found"


class PaymentNotFound(PaymentError):
    """The processor does not know the external payment identifier."""
    kind = "payment_not_found"


class GatewayUnavailable(PaymentError):
    """Network failure, timeout or 5xx from the processor."""
    kind = "gateway_unavailable"
    retryable = True


class InvalidState(PaymentError):
    """The processor reports a payment state the operation does not apply to."""
    kind = "invalid_state"


class InvalidTransition(PaymentError):
    """The requested transition is not allowed from the record's current state."""
    kind = "invalid_transition"


class ConcurrentUpdate(PaymentError):
    """Optimistic-concurrency conflicts exhausted the retry budget."""
    kind = "concurrent_update"
    retryable = True
