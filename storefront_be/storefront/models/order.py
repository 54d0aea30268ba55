import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Integer, String, Float, Boolean, ForeignKey, DateTime, Enum
from sqlalchemy.orm import Session, relationship

from storefront.models.user import Base


class OrderStatus(str, enum.Enum):
    ORDER_PLACED = "ORDER_PLACED"
    PROCESSING = "PROCESSING"
    DELIVERED = "DELIVERED"
    RETURN_REQUESTED = "RETURN_REQUESTED"
    RETURN_APPROVED = "RETURN_APPROVED"
    RETURN_REJECTED = "RETURN_REJECTED"
    RETURNED = "RETURNED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, enum.Enum):
    GATEWAY = "GATEWAY"
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=False, index=True)

    total = Column(Float, nullable=False, default=0.0)
    payment_method = Column(Enum(PaymentMethod, native_enum=False, length=30), nullable=False)
    is_paid = Column(Boolean, default=False, nullable=False)
    payment_reference = Column(String(255))  # gateway payment id, set once payment succeeds
    status = Column(
        Enum(OrderStatus, native_enum=False, length=30),
        default=OrderStatus.ORDER_PLACED,
        nullable=False,
        index=True,
    )

    delivered_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    return_requested_at = Column(DateTime)
    return_approved_at = Column(DateTime)
    return_rejected_at = Column(DateTime)
    returned_at = Column(DateTime)
    refunded_at = Column(DateTime)

    return_reason = Column(String(500))
    refund_amount = Column(Float)
    refund_reason = Column(String(500))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User")
    store = relationship("Store")
    return_requests = relationship("ReturnRequest", back_populates="order")
    refunds = relationship("Refund", back_populates="order")


def load_order(db: Session, order_id: int) -> Optional[Order]:
    # Always hit the database; a stale identity-map copy must never drive a transition
    return (
        db.query(Order)
        .populate_existing()
        .filter(Order.id == order_id)
        .first()
    )


def update_order_if_status(
    db: Session,
    order_id: int,
    expected_status: OrderStatus,
    values: dict,
    require_unrefunded: bool = False,
) -> bool:
    """Conditionally update an order, guarded by its expected current status.

    Returns False when no row matched, meaning another transition on the same
    order committed first. Does not commit.
    """
    query = db.query(Order).filter(Order.id == order_id, Order.status == expected_status)
    if require_unrefunded:
        query = query.filter(Order.refunded_at.is_(None))
    values = dict(values)
    values.setdefault("updated_at", datetime.utcnow())
    updated = query.update(values, synchronize_session=False)
    return updated == 1
