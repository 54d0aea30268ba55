"""Order lifecycle errors.

Raised by the services when a business rule rejects an action. Every error
carries a machine-readable ``kind`` and a message safe to show the caller;
mapping kinds to HTTP status codes happens in ``storefront.main``.
"""

from typing import Optional


class OrderFlowError(Exception):
    kind = "error"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict:
        payload = {"error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(OrderFlowError):
    """Malformed or out-of-range input; ``details`` maps field name to message."""

    kind = "validation_error"

    def __init__(self, message: str = "Validation failed", fields: Optional[dict] = None):
        super().__init__(message, fields)
        self.fields = fields or {}


class NotAuthorized(OrderFlowError):
    kind = "not_authorized"


class NotFound(OrderFlowError):
    kind = "not_found"


class InvalidTransition(OrderFlowError):
    """The current status forbids the requested move."""

    kind = "invalid_transition"


class ReturnWindowExpired(InvalidTransition):
    kind = "return_window_expired"

    def __init__(self, max_days: int, days_since_delivery: int):
        super().__init__(
            f"Return window has expired. Returns allowed within {max_days} days of delivery.",
            {"maxDays": max_days, "daysSinceDelivery": days_since_delivery},
        )
        self.max_days = max_days


class RateLimited(OrderFlowError):
    kind = "rate_limited"

    def __init__(self, retry_after_seconds: int):
        minutes = max(1, -(-retry_after_seconds // 60))
        super().__init__(
            f"Rate limit exceeded. Try again in {minutes} minute(s).",
            {"retryAfterSeconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class AlreadyRefunded(OrderFlowError):
    kind = "already_refunded"


class GatewayFailure(OrderFlowError):
    """The refund call failed, was rejected, or timed out with an unknown outcome."""

    kind = "gateway_failure"


class Conflict(OrderFlowError):
    """A concurrent transition on the same record committed first."""

    kind = "conflict"
