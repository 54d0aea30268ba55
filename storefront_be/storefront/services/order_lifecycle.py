"""Order and return lifecycle.

Every change to an order's status goes through this module. Legal moves are
listed in ``TRANSITIONS``; anything else is rejected before a single field is
written. Writes are conditional on the status that was read, so when two
requests race on the same order only the first one commits and the other gets
``Conflict``.

Operations take an explicit ``Caller``; nothing here looks at the request.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.config import get_settings
from storefront.models.order import Order, OrderStatus, PaymentMethod, load_order, update_order_if_status
from storefront.models.refund import Refund
from storefront.models.return_request import ReturnRequest, ReturnStatus
from storefront.models.store import Store
from storefront.models.user import Role
from storefront.schemas.return_request import ReturnRequestCreate
from storefront.services.authorization import (
    Caller,
    ResourceOwnership,
    Scope,
    ownership_of,
    require_authorized,
)
from storefront.services.errors import (
    AlreadyRefunded,
    Conflict,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    RateLimited,
    ReturnWindowExpired,
    ValidationError,
)
from storefront.services.payment_gateway import PaymentGateway
from storefront.services.refunds import (
    RETURN_REFUND_REASON,
    RefundCoordinator,
    RefundOutcome,
    is_refunded,
    to_minor_units,
)
from storefront.utils.rate_limit import RateLimiter, rate_limit_key

logger = logging.getLogger(__name__)

RETURN_RATE_LIMIT_ACTION = "return_request"
DEFECT_KEYWORDS = ("defective", "damaged")


class Action(str, enum.Enum):
    START_PROCESSING = "START_PROCESSING"
    DELIVER = "DELIVER"
    CANCEL = "CANCEL"
    REQUEST_RETURN = "REQUEST_RETURN"
    APPROVE_RETURN = "APPROVE_RETURN"
    REJECT_RETURN = "REJECT_RETURN"
    PROCESS_RETURN = "PROCESS_RETURN"
    REFUND = "REFUND"
    # Record a refund on a cancelled order; CANCELLED is absorbing so the status stays put
    SETTLE_REFUND = "SETTLE_REFUND"


TRANSITIONS = {
    (OrderStatus.ORDER_PLACED, Action.START_PROCESSING): OrderStatus.PROCESSING,
    (OrderStatus.PROCESSING, Action.DELIVER): OrderStatus.DELIVERED,
    (OrderStatus.ORDER_PLACED, Action.CANCEL): OrderStatus.CANCELLED,
    (OrderStatus.PROCESSING, Action.CANCEL): OrderStatus.CANCELLED,
    (OrderStatus.DELIVERED, Action.REQUEST_RETURN): OrderStatus.RETURN_REQUESTED,
    (OrderStatus.RETURN_REQUESTED, Action.APPROVE_RETURN): OrderStatus.RETURN_APPROVED,
    (OrderStatus.RETURN_REQUESTED, Action.REJECT_RETURN): OrderStatus.RETURN_REJECTED,
    (OrderStatus.RETURN_APPROVED, Action.PROCESS_RETURN): OrderStatus.RETURNED,
    (OrderStatus.CANCELLED, Action.SETTLE_REFUND): OrderStatus.CANCELLED,
}
for _status in (
    OrderStatus.ORDER_PLACED,
    OrderStatus.PROCESSING,
    OrderStatus.DELIVERED,
    OrderStatus.RETURN_REQUESTED,
    OrderStatus.RETURN_APPROVED,
    OrderStatus.RETURN_REJECTED,
    OrderStatus.RETURNED,
):
    TRANSITIONS[(_status, Action.REFUND)] = OrderStatus.REFUNDED

# Store owners may only refund delivered orders; admins may refund from any status in TRANSITIONS
STORE_REFUNDABLE_STATUSES = frozenset([OrderStatus.DELIVERED])
# A return can be refunded by the store once approved, before or after the goods come back
RETURN_REFUNDABLE_STATUSES = frozenset([ReturnStatus.APPROVED, ReturnStatus.PROCESSED])

TRANSITION_TIMESTAMPS = {
    Action.DELIVER: "delivered_at",
    Action.CANCEL: "cancelled_at",
    Action.REQUEST_RETURN: "return_requested_at",
    Action.APPROVE_RETURN: "return_approved_at",
    Action.REJECT_RETURN: "return_rejected_at",
    Action.PROCESS_RETURN: "returned_at",
}

RETURN_TRANSITIONS = frozenset([
    (ReturnStatus.REQUESTED, ReturnStatus.APPROVED),
    (ReturnStatus.REQUESTED, ReturnStatus.REJECTED),
    (ReturnStatus.APPROVED, ReturnStatus.PROCESSED),
])

RETURN_ACTIONS = {
    ReturnStatus.APPROVED: Action.APPROVE_RETURN,
    ReturnStatus.REJECTED: Action.REJECT_RETURN,
    ReturnStatus.PROCESSED: Action.PROCESS_RETURN,
}

FULFILLMENT_ACTIONS = {
    OrderStatus.PROCESSING: Action.START_PROCESSING,
    OrderStatus.DELIVERED: Action.DELIVER,
}


@dataclass
class CancellationResult:
    order: Order
    refund: RefundOutcome


def next_status(current: OrderStatus, action: Action) -> OrderStatus:
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise InvalidTransition(
            f"Order in status {current.value} cannot {action.value.lower().replace('_', ' ')}",
            {"status": current.value},
        ) from None


def apply_transition(db: Session, order: Order, action: Action, values: Optional[dict] = None) -> OrderStatus:
    """Move ``order`` along ``action`` if it is still in the status it was read in.

    Stamps the action's timestamp. Does not commit; on a lost race the session
    is rolled back and Conflict is raised.
    """
    target = next_status(order.status, action)
    changes = dict(values or {})
    changes["status"] = target
    stamp = TRANSITION_TIMESTAMPS.get(action)
    if stamp:
        changes.setdefault(stamp, datetime.utcnow())
    if not update_order_if_status(db, order.id, order.status, changes):
        db.rollback()
        raise Conflict("Order was modified by another request; reload and try again")
    logger.info("Order %s: %s -> %s (%s)", order.id, order.status.value, target.value, action.value)
    return target


def _get_order(db: Session, order_id: int) -> Order:
    order = load_order(db, order_id)
    if not order:
        raise NotFound("Order not found")
    return order


def _get_return_request(db: Session, return_id: int) -> ReturnRequest:
    req = (
        db.query(ReturnRequest)
        .populate_existing()
        .filter(ReturnRequest.id == return_id)
        .first()
    )
    if not req:
        raise NotFound("Return request not found")
    return req


def _paid_through_gateway(order: Order) -> bool:
    return bool(order.is_paid and order.payment_method == PaymentMethod.GATEWAY and order.payment_reference)


def return_window_days(reason: str, settings=None) -> int:
    settings = settings or get_settings()
    lowered = reason.lower()
    if any(word in lowered for word in DEFECT_KEYWORDS):
        return settings.DEFECT_RETURN_WINDOW_DAYS
    return settings.RETURN_WINDOW_DAYS


# ---- customer actions ----

def get_order(db: Session, order_id: int, caller: Caller) -> Order:
    order = _get_order(db, order_id)
    require_authorized(caller, Scope.VIEW, ownership_of(order), "Not authorized to view this order")
    return order


def list_orders(db: Session, caller: Caller) -> List[Order]:
    return db.query(Order).filter(Order.user_id == caller.user_id).order_by(Order.created_at.desc()).all()


def cancel_order(db: Session, order_id: int, caller: Caller, gateway: PaymentGateway) -> CancellationResult:
    order = _get_order(db, order_id)
    require_authorized(caller, Scope.CUSTOMER, ownership_of(order), "Not authorized to cancel this order")
    apply_transition(db, order, Action.CANCEL)
    db.commit()
    order = load_order(db, order_id)

    if not _paid_through_gateway(order):
        return CancellationResult(order=order, refund=RefundOutcome.NOT_APPLICABLE)

    outcome, refunded = RefundCoordinator(db, gateway).refund_cancelled_order(order)
    if refunded is None:
        # Cancellation stands; refund fields stay empty so operators can see it is pending
        refunded = load_order(db, order_id)
    return CancellationResult(order=refunded, refund=outcome)


def request_return(
    db: Session,
    payload: ReturnRequestCreate,
    caller: Caller,
    rate_limiter: RateLimiter,
    now: Optional[datetime] = None,
) -> ReturnRequest:
    settings = get_settings()
    decision = rate_limiter.allow(
        rate_limit_key(caller.user_id, RETURN_RATE_LIMIT_ACTION),
        settings.RETURN_RATE_LIMIT_MAX,
        settings.RETURN_RATE_LIMIT_WINDOW_SECONDS,
    )
    if not decision.allowed:
        raise RateLimited(decision.retry_after_seconds)

    order = _get_order(db, payload.orderId)
    require_authorized(caller, Scope.CUSTOMER, ownership_of(order), "Not authorized to return this order")
    next_status(order.status, Action.REQUEST_RETURN)

    now = now or datetime.utcnow()
    delivered_at = order.delivered_at or order.created_at
    days_since_delivery = max(0, (now - delivered_at).days)
    max_days = return_window_days(payload.reason, settings)
    if days_since_delivery > max_days:
        raise ReturnWindowExpired(max_days, days_since_delivery)

    existing = (
        db.query(ReturnRequest)
        .filter(ReturnRequest.order_id == order.id, ReturnRequest.user_id == caller.user_id)
        .first()
    )
    if existing:
        raise Conflict("Return request already exists for this order")

    req = ReturnRequest(
        order_id=order.id,
        user_id=caller.user_id,
        reason=payload.reason,
        description=payload.description,
        images=list(payload.images),
        status=ReturnStatus.REQUESTED,
    )
    db.add(req)
    try:
        db.flush()
        apply_transition(
            db, order, Action.REQUEST_RETURN,
            {"return_requested_at": now, "return_reason": payload.reason},
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Return request already exists for this order")
    db.refresh(req)
    return req


# ---- store and admin actions ----

def advance_fulfillment(db: Session, order_id: int, caller: Caller, status: OrderStatus) -> Order:
    action = FULFILLMENT_ACTIONS.get(status)
    if action is None:
        raise ValidationError("Invalid fulfilment status", {"status": "Must be PROCESSING or DELIVERED"})
    order = _get_order(db, order_id)
    require_authorized(caller, Scope.STORE, ownership_of(order), "Not authorized to update this order")
    apply_transition(db, order, action)
    db.commit()
    return load_order(db, order_id)


def resolve_return(
    db: Session,
    return_id: int,
    caller: Caller,
    new_status: ReturnStatus,
    admin_note: Optional[str] = None,
) -> ReturnRequest:
    req = _get_return_request(db, return_id)
    order = _get_order(db, req.order_id)
    require_authorized(caller, Scope.STORE, ownership_of(order), "Not authorized to update this return")

    if (req.status, new_status) not in RETURN_TRANSITIONS:
        raise InvalidTransition(
            f"Return request in status {req.status.value} cannot move to {new_status.value}",
            {"status": req.status.value},
        )
    action = RETURN_ACTIONS[new_status]
    next_status(order.status, action)

    values = {"status": new_status, "updated_at": datetime.utcnow()}
    if admin_note is not None:
        values["admin_note"] = admin_note
    updated = (
        db.query(ReturnRequest)
        .filter(ReturnRequest.id == req.id, ReturnRequest.status == req.status)
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        db.rollback()
        raise Conflict("Return request was modified by another request; reload and try again")
    apply_transition(db, order, action)
    db.commit()
    logger.info("Return request %s resolved to %s by user %s", req.id, new_status.value, caller.user_id)
    return _get_return_request(db, return_id)


def _check_refundable(order: Order) -> None:
    if is_refunded(order):
        raise AlreadyRefunded("Order already refunded")
    if not _paid_through_gateway(order):
        raise InvalidTransition("Order is not eligible for refund: not paid through the payment gateway")


def _refund_amount_minor(order: Order, amount: Optional[float]) -> int:
    total_minor = to_minor_units(order.total)
    amount_minor = total_minor if amount is None else to_minor_units(amount)
    if amount_minor <= 0:
        raise ValidationError("Validation failed", {"amount": "Refund amount must be greater than zero"})
    if amount_minor > total_minor:
        raise ValidationError("Validation failed", {"amount": "Refund amount cannot exceed order total"})
    return amount_minor


def direct_refund(
    db: Session,
    order_id: int,
    caller: Caller,
    gateway: PaymentGateway,
    amount: Optional[float] = None,
    reason: Optional[str] = None,
) -> Order:
    order = _get_order(db, order_id)
    require_authorized(caller, Scope.STORE, ownership_of(order), "Not authorized to refund this order")

    _check_refundable(order)
    if not caller.is_admin and order.status not in STORE_REFUNDABLE_STATUSES:
        raise InvalidTransition(
            "Only delivered orders can be refunded by the store",
            {"status": order.status.value},
        )

    action = Action.SETTLE_REFUND if order.status == OrderStatus.CANCELLED else Action.REFUND
    target = next_status(order.status, action)
    amount_minor = _refund_amount_minor(order, amount)

    return RefundCoordinator(db, gateway).refund_direct(
        order, amount_minor, reason, target, initiated_by=caller.user_id,
    )


def refund_return(
    db: Session,
    return_id: int,
    caller: Caller,
    gateway: PaymentGateway,
    amount: Optional[float] = None,
    reason: Optional[str] = None,
) -> Order:
    """Refund the order behind an approved (or processed) return request."""
    req = _get_return_request(db, return_id)
    order = _get_order(db, req.order_id)
    require_authorized(caller, Scope.STORE, ownership_of(order), "Not authorized to refund this return")

    _check_refundable(order)
    if req.status not in RETURN_REFUNDABLE_STATUSES:
        raise InvalidTransition(
            f"Return request in status {req.status.value} cannot be refunded; approve it first",
            {"status": req.status.value},
        )
    target = next_status(order.status, Action.REFUND)
    amount_minor = _refund_amount_minor(order, amount)

    return RefundCoordinator(db, gateway).refund_direct(
        order, amount_minor, reason or RETURN_REFUND_REASON, target, initiated_by=caller.user_id,
    )


def list_refunds(db: Session, caller: Caller) -> List[Refund]:
    """Admins see every refund; everyone else sees refunds on their own orders."""
    query = db.query(Refund).order_by(Refund.created_at.desc(), Refund.id.desc())
    if caller.is_admin:
        return query.all()
    return query.join(Order, Order.id == Refund.order_id).filter(Order.user_id == caller.user_id).all()


# ---- return request reads ----

def get_return_request(db: Session, return_id: int, caller: Caller) -> ReturnRequest:
    req = _get_return_request(db, return_id)
    order_facts = ownership_of(req.order)
    ownership = ResourceOwnership(
        owner_user_id=req.user_id,
        store_owner_user_id=order_facts.store_owner_user_id,
        store_active=order_facts.store_active,
    )
    require_authorized(caller, Scope.VIEW, ownership, "Not authorized to view this return request")
    return req


def list_own_return_requests(db: Session, caller: Caller) -> List[ReturnRequest]:
    return (
        db.query(ReturnRequest)
        .filter(ReturnRequest.user_id == caller.user_id)
        .order_by(ReturnRequest.created_at.desc())
        .all()
    )


def list_managed_return_requests(db: Session, caller: Caller) -> List[ReturnRequest]:
    query = db.query(ReturnRequest).order_by(ReturnRequest.created_at.desc())
    if caller.is_admin:
        return query.all()
    if caller.role != Role.STORE_OWNER:
        raise NotAuthorized("Admin or store owner access required")
    return (
        query.join(Order, Order.id == ReturnRequest.order_id)
        .join(Store, Store.id == Order.store_id)
        .filter(Store.user_id == caller.user_id, Store.is_active.is_(True))
        .all()
    )
