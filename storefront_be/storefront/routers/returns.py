from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from storefront.models.user import get_db
from storefront.models.return_request import ReturnRequest
from storefront.routers.orders import map_order_to_out, iso_or_none
from storefront.schemas.return_request import (
    ReturnRequestCreate,
    ReturnRequestDetailOut,
    ReturnRequestOut,
    StoreSummary,
    UserSummary,
)
from storefront.services import order_lifecycle
from storefront.services.authorization import Caller
from storefront.utils.rate_limit import RateLimiter, get_rate_limiter
from storefront.utils.security import get_current_caller


router = APIRouter()


def map_return_to_out(req: ReturnRequest) -> ReturnRequestOut:
    return ReturnRequestOut(
        id=req.id,
        orderId=req.order_id,
        userId=req.user_id,
        reason=req.reason,
        description=req.description,
        images=list(req.images or []),
        status=req.status.value,
        adminNote=req.admin_note,
        createdAt=iso_or_none(req.created_at),
        updatedAt=iso_or_none(req.updated_at),
    )


def map_return_to_detail(req: ReturnRequest) -> ReturnRequestDetailOut:
    order = req.order
    store = order.store
    user = req.user
    return ReturnRequestDetailOut(
        **map_return_to_out(req).model_dump(),
        order=map_order_to_out(order),
        store=StoreSummary(id=store.id, name=store.name, isActive=store.is_active) if store else None,
        user=UserSummary(id=user.id, name=user.full_name, email=user.email) if user else None,
    )


# Create Return Request
@router.post("/", response_model=ReturnRequestOut)
def create_return_request(
    payload: ReturnRequestCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    req = order_lifecycle.request_return(db, payload, caller, rate_limiter)
    return map_return_to_out(req)


# Get Own Return Requests
@router.get("/", response_model=List[ReturnRequestOut])
def get_own_return_requests(db: Session = Depends(get_db), caller: Caller = Depends(get_current_caller)):
    return [map_return_to_out(r) for r in order_lifecycle.list_own_return_requests(db, caller)]


# Get Return Request (owner, store owner or admin)
@router.get("/{id}", response_model=ReturnRequestDetailOut)
def get_return_request(id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_current_caller)):
    return map_return_to_detail(order_lifecycle.get_return_request(db, id, caller))
