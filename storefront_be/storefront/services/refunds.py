"""Refund coordination between the payment gateway and the order record.

A refund spans two systems with no shared transaction, so it runs as two
explicit phases:

1. ``issue``  - guard against a second refund, then call the gateway with a
   key derived from the order id. The order record is not touched, so a
   failure here leaves nothing to undo.
2. ``commit`` - conditionally write the refund fields and the receipt in one
   database transaction, guarded by the order's expected status.

If the process dies between the phases, or ``commit`` loses a race, the order
still looks unrefunded. Retrying reuses the same key and the gateway answers
with the refund it already made instead of issuing another.
"""

import enum
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.models.order import Order, OrderStatus, load_order, update_order_if_status
from storefront.models.refund import Refund
from storefront.services.errors import AlreadyRefunded, Conflict, GatewayFailure
from storefront.services.payment_gateway import PaymentGateway, RefundReceipt

logger = logging.getLogger(__name__)

CANCELLATION_REFUND_REASON = "Order cancelled"
RETURN_REFUND_REASON = "Return refund"


class RefundOutcome(str, enum.Enum):
    NOT_APPLICABLE = "NOT_APPLICABLE"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"
    # issued by the gateway but lost the race to record it
    UNRECORDED = "UNRECORDED"


def to_minor_units(amount: float) -> int:
    return int(Decimal(str(amount)).scaleb(2).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor_units: int) -> float:
    return float(Decimal(amount_minor_units).scaleb(-2))


def refund_idempotency_key(order_id: int) -> str:
    return f"order-{order_id}-refund"


def is_refunded(order: Order) -> bool:
    return order.status == OrderStatus.REFUNDED or order.refunded_at is not None


class RefundCoordinator:
    def __init__(self, db: Session, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway

    def issue(self, order: Order, amount_minor_units: int, reason: Optional[str]) -> RefundReceipt:
        if is_refunded(order):
            raise AlreadyRefunded("Order already refunded")
        return self.gateway.issue_refund(
            order.payment_reference,
            amount_minor_units,
            reason,
            refund_idempotency_key(order.id),
        )

    def commit(
        self,
        order: Order,
        receipt: RefundReceipt,
        expected_status: OrderStatus,
        next_status: OrderStatus,
        reason: Optional[str],
        initiated_by: Optional[int] = None,
    ) -> Order:
        amount = from_minor_units(receipt.amount_minor_units)
        now = datetime.utcnow()
        try:
            updated = update_order_if_status(
                self.db,
                order.id,
                expected_status,
                {
                    "status": next_status,
                    "refunded_at": now,
                    "refund_amount": amount,
                    "refund_reason": reason,
                },
                require_unrefunded=True,
            )
            if not updated:
                raise Conflict("Order changed while the refund was being recorded; retry the refund")
            self.db.add(
                Refund(
                    order_id=order.id,
                    gateway_refund_id=receipt.refund_id,
                    amount=amount,
                    reason=reason,
                    status=receipt.status,
                    idempotency_key=refund_idempotency_key(order.id),
                    initiated_by=initiated_by,
                )
            )
            self.db.commit()
        except (Conflict, IntegrityError) as e:
            self.db.rollback()
            logger.error(
                "Gateway refund %s for order %s was issued but not recorded: %s",
                receipt.refund_id, order.id, e,
            )
            if isinstance(e, Conflict):
                raise
            raise Conflict("Refund already recorded for this order") from e
        logger.info("Refund %s recorded for order %s (%.2f)", receipt.refund_id, order.id, amount)
        return load_order(self.db, order.id)

    def refund_cancelled_order(self, order: Order) -> Tuple[RefundOutcome, Optional[Order]]:
        """Refund the full total of a just-cancelled order.

        The cancellation already committed and must stand, so nothing here
        raises. Gateway failures come back as FAILED with the refund fields
        unset for an operator to retry. A refund the gateway made but this
        service could not record comes back as UNRECORDED: the money moved
        and the error log carries the gateway refund id.
        """
        try:
            receipt = self.issue(order, to_minor_units(order.total), CANCELLATION_REFUND_REASON)
        except GatewayFailure as e:
            logger.error("Refund failed for cancelled order %s: %s", order.id, e)
            return RefundOutcome.FAILED, None
        try:
            refunded = self.commit(
                order, receipt, OrderStatus.CANCELLED, OrderStatus.CANCELLED, CANCELLATION_REFUND_REASON,
            )
        except Conflict:
            return RefundOutcome.UNRECORDED, None
        return RefundOutcome.REFUNDED, refunded

    def refund_direct(
        self,
        order: Order,
        amount_minor_units: int,
        reason: Optional[str],
        next_status: OrderStatus,
        initiated_by: Optional[int] = None,
    ) -> Order:
        """Refund on explicit request. Gateway failures propagate with the order untouched."""
        expected_status = order.status
        receipt = self.issue(order, amount_minor_units, reason)
        return self.commit(order, receipt, expected_status, next_status, reason, initiated_by)
