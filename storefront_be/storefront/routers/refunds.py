from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from storefront.models.refund import Refund
from storefront.models.user import get_db
from storefront.routers.orders import iso_or_none, map_order_to_out
from storefront.schemas.order import RefundRecordOut
from storefront.services import order_lifecycle
from storefront.services.authorization import Caller
from storefront.utils.security import get_current_caller


router = APIRouter()


def map_refund_to_out(refund: Refund) -> RefundRecordOut:
    return RefundRecordOut(
        id=refund.id,
        orderId=refund.order_id,
        refundId=refund.gateway_refund_id,
        amount=refund.amount,
        reason=refund.reason,
        status=refund.status,
        initiatedBy=refund.initiated_by,
        createdAt=iso_or_none(refund.created_at),
        order=map_order_to_out(refund.order),
    )


# Get Refund History (Admin: all, others: refunds on own orders)
@router.get("/", response_model=List[RefundRecordOut])
def get_refunds(db: Session = Depends(get_db), caller: Caller = Depends(get_current_caller)):
    return [map_refund_to_out(r) for r in order_lifecycle.list_refunds(db, caller)]
