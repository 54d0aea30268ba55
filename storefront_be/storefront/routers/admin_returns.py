from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from storefront.models.user import get_db
from storefront.models.return_request import ReturnStatus
from storefront.routers.orders import refund_out
from storefront.routers.returns import map_return_to_out
from storefront.schemas.order import DirectRefundIn, RefundOut
from storefront.schemas.return_request import ReturnRequestOut, ReturnStatusUpdate
from storefront.services import order_lifecycle
from storefront.services.authorization import Caller
from storefront.services.payment_gateway import PaymentGateway, get_payment_gateway
from storefront.utils.security import get_current_caller


router = APIRouter()


# Get Return Requests (Admin: all, Store owner: own store)
@router.get("/", response_model=List[ReturnRequestOut])
def get_return_requests(db: Session = Depends(get_db), caller: Caller = Depends(get_current_caller)):
    return [map_return_to_out(r) for r in order_lifecycle.list_managed_return_requests(db, caller)]


# Update Return Status (Admin / Store owner)
@router.put("/{id}/status", response_model=ReturnRequestOut)
def update_return_status(
    id: int,
    payload: ReturnStatusUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    req = order_lifecycle.resolve_return(db, id, caller, ReturnStatus(payload.status), payload.adminNote)
    return map_return_to_out(req)


# Refund Approved Return (Admin / Store owner)
@router.post("/{id}/refund", response_model=RefundOut)
def refund_return_request(
    id: int,
    payload: DirectRefundIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    order = order_lifecycle.refund_return(db, id, caller, gateway, payload.amount, payload.reason)
    return refund_out(order)
