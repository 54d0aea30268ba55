from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime

from storefront.models.user import get_db
from storefront.models.order import Order, OrderStatus
from storefront.schemas.order import (
    CancelOrderOut,
    DirectRefundIn,
    FulfillmentUpdate,
    OrderOut,
    RefundOut,
)
from storefront.services import order_lifecycle
from storefront.services.authorization import Caller
from storefront.services.errors import NotAuthorized
from storefront.services.payment_gateway import PaymentGateway, get_payment_gateway
from storefront.utils.security import get_current_caller


router = APIRouter()
store_router = APIRouter()
admin_router = APIRouter()


def iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def map_order_to_out(order: Order) -> OrderOut:
    return OrderOut(
        id=order.id,
        userId=order.user_id,
        storeId=order.store_id,
        total=order.total,
        paymentMethod=order.payment_method.value,
        isPaid=order.is_paid,
        status=order.status.value,
        returnReason=order.return_reason,
        refundAmount=order.refund_amount,
        refundReason=order.refund_reason,
        deliveredAt=iso_or_none(order.delivered_at),
        cancelledAt=iso_or_none(order.cancelled_at),
        returnRequestedAt=iso_or_none(order.return_requested_at),
        returnApprovedAt=iso_or_none(order.return_approved_at),
        returnRejectedAt=iso_or_none(order.return_rejected_at),
        returnedAt=iso_or_none(order.returned_at),
        refundedAt=iso_or_none(order.refunded_at),
        createdAt=iso_or_none(order.created_at),
        updatedAt=iso_or_none(order.updated_at),
    )


def refund_out(order: Order) -> RefundOut:
    refund = max(order.refunds, key=lambda r: r.id)
    return RefundOut(
        message="Refund processed successfully",
        refundId=refund.gateway_refund_id,
        amountRefunded=refund.amount,
        order=map_order_to_out(order),
    )


# Get User Orders
@router.get("/", response_model=List[OrderOut])
def get_user_orders(
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return [map_order_to_out(o) for o in order_lifecycle.list_orders(db, caller)]


# Get Order by ID
@router.get("/{id}", response_model=OrderOut)
def get_order_by_id(
    id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return map_order_to_out(order_lifecycle.get_order(db, id, caller))


# Cancel Order
@router.post("/{id}/cancel", response_model=CancelOrderOut)
def cancel_order(
    id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    result = order_lifecycle.cancel_order(db, id, caller, gateway)
    return CancelOrderOut(
        message="Order cancelled successfully",
        order=map_order_to_out(result.order),
        refundStatus=result.refund.value,
    )


# Store: Update Fulfilment Status
@store_router.put("/{id}/status", response_model=OrderOut)
def update_fulfillment_status(
    id: int,
    payload: FulfillmentUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    order = order_lifecycle.advance_fulfillment(db, id, caller, OrderStatus(payload.status))
    return map_order_to_out(order)


# Store: Refund Order
@store_router.post("/{id}/refund", response_model=RefundOut)
def store_refund_order(
    id: int,
    payload: DirectRefundIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    order = order_lifecycle.direct_refund(db, id, caller, gateway, payload.amount, payload.reason)
    return refund_out(order)


# Admin: Refund Order
@admin_router.post("/{id}/refund", response_model=RefundOut)
def admin_refund_order(
    id: int,
    payload: DirectRefundIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    if not caller.is_admin:
        raise NotAuthorized("Admin access required")
    order = order_lifecycle.direct_refund(db, id, caller, gateway, payload.amount, payload.reason)
    return refund_out(order)
