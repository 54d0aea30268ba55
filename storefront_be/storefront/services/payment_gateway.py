"""Payment gateway adapter.

The gateway holds the authoritative record of a payment. This module exposes
the one call the order lifecycle needs, issuing a refund against a prior
payment, behind a small interface so tests and other processors can stand in.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import stripe
from fastapi import Request

from storefront.services.errors import GatewayFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundReceipt:
    refund_id: str
    amount_minor_units: int
    status: str


class PaymentGateway(ABC):
    @abstractmethod
    def issue_refund(
        self,
        payment_reference: str,
        amount_minor_units: int,
        reason: Optional[str],
        idempotency_key: str,
    ) -> RefundReceipt:
        """Refund ``amount_minor_units`` of the payment.

        Raises GatewayFailure on any error, including a timeout whose outcome
        is unknown. Repeating a call with the same idempotency key must not
        refund twice.
        """


class StripeGateway(PaymentGateway):
    """Refunds through Stripe's module-level API.

    Every refund for an order is sent under the same idempotency key, so Stripe
    never refunds an order twice. The flip side is that Stripe replays the
    stored result of a key for 24 hours: a rejected refund keeps coming back
    rejected, and a retry with a different amount is refused outright. Both
    surface as GatewayFailure with a message saying so.
    """

    def __init__(self, api_key: str, timeout_seconds: int = 15, max_retries: int = 2):
        if not api_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not set")
        stripe.api_key = api_key
        stripe.max_network_retries = max_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    def issue_refund(self, payment_reference, amount_minor_units, reason, idempotency_key):
        try:
            refund = stripe.Refund.create(
                payment_intent=payment_reference,
                amount=amount_minor_units,
                # Stripe's own reason field is an enum; keep the free text in metadata
                reason="requested_by_customer",
                metadata={"refund_reason": (reason or "")[:500]},
                idempotency_key=idempotency_key,
            )
        except stripe.APIConnectionError as e:
            logger.warning("Stripe refund connection failure for %s: %s", payment_reference, e)
            raise GatewayFailure("Payment gateway did not respond; refund outcome unknown") from e
        except stripe.IdempotencyError as e:
            logger.warning("Stripe refund key %s reused with different parameters: %s", idempotency_key, e)
            raise GatewayFailure(
                "A refund with different parameters was already attempted for this order; "
                "retry with the original amount",
                {"idempotencyKey": idempotency_key},
            ) from e
        except stripe.StripeError as e:
            logger.warning("Stripe refund rejected for %s: %s", payment_reference, e)
            if _is_replayed(e):
                raise GatewayFailure(
                    "Payment gateway already rejected this refund; the result is replayed for 24 hours "
                    f"({e.user_message or 'unknown error'})",
                    {"idempotencyKey": idempotency_key, "replayed": True},
                ) from e
            raise GatewayFailure(f"Payment gateway rejected the refund: {e.user_message or 'unknown error'}") from e
        if refund.status in ("failed", "canceled"):
            raise GatewayFailure(f"Payment gateway reported refund status {refund.status}")
        return RefundReceipt(refund_id=refund.id, amount_minor_units=refund.amount, status=refund.status)


def _is_replayed(error) -> bool:
    headers = getattr(error, "headers", None) or {}
    return any(k.lower() == "idempotent-replayed" and str(v).lower() == "true" for k, v in headers.items())


def build_payment_gateway(settings) -> Optional[PaymentGateway]:
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY not configured; refunds will fail until it is set")
        return None
    return StripeGateway(
        settings.STRIPE_SECRET_KEY,
        timeout_seconds=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
        max_retries=settings.PAYMENT_GATEWAY_MAX_RETRIES,
    )


class UnconfiguredGateway(PaymentGateway):
    """Stands in when no processor is configured so refunds fail loudly instead of silently."""

    def issue_refund(self, payment_reference, amount_minor_units, reason, idempotency_key):
        raise GatewayFailure("Payment gateway is not configured")


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway or UnconfiguredGateway()
