from pydantic import BaseModel, Field, field_validator
from typing import Optional, Literal

from storefront.utils.validation import clean_text


OrderStatusName = Literal[
    "ORDER_PLACED",
    "PROCESSING",
    "DELIVERED",
    "RETURN_REQUESTED",
    "RETURN_APPROVED",
    "RETURN_REJECTED",
    "RETURNED",
    "CANCELLED",
    "REFUNDED",
]
PaymentMethodName = Literal["GATEWAY", "CASH_ON_DELIVERY"]
RefundStatusName = Literal["NOT_APPLICABLE", "REFUNDED", "FAILED", "UNRECORDED"]

MAX_REFUND_REASON_LENGTH = 300


class FulfillmentUpdate(BaseModel):
    status: Literal["PROCESSING", "DELIVERED"]


class DirectRefundIn(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=MAX_REFUND_REASON_LENGTH)

    @field_validator("reason")
    @classmethod
    def _clean_reason(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return clean_text(v, MAX_REFUND_REASON_LENGTH) or None


class OrderOut(BaseModel):
    id: int
    userId: int
    storeId: int
    total: float
    paymentMethod: PaymentMethodName
    isPaid: bool
    status: OrderStatusName
    returnReason: Optional[str] = None
    refundAmount: Optional[float] = None
    refundReason: Optional[str] = None
    deliveredAt: Optional[str] = None
    cancelledAt: Optional[str] = None
    returnRequestedAt: Optional[str] = None
    returnApprovedAt: Optional[str] = None
    returnRejectedAt: Optional[str] = None
    returnedAt: Optional[str] = None
    refundedAt: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None


class CancelOrderOut(BaseModel):
    message: str
    order: OrderOut
    refundStatus: RefundStatusName


class RefundOut(BaseModel):
    message: str
    refundId: str
    amountRefunded: float
    order: OrderOut


class RefundRecordOut(BaseModel):
    id: int
    orderId: int
    refundId: str
    amount: float
    reason: Optional[str] = None
    status: Optional[str] = None
    initiatedBy: Optional[int] = None
    createdAt: Optional[str] = None
    order: OrderOut
