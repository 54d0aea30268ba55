from sqlalchemy import Column, Integer, String, Float, ForeignKey, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime
from storefront.models.user import Base


class Refund(Base):
    """Persisted gateway receipt; one row per refund that reached the order record."""

    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    gateway_refund_id = Column(String(255), nullable=False)
    amount = Column(Float, nullable=False)
    reason = Column(String(500))
    status = Column(String(50))  # as reported by the gateway, e.g. succeeded, pending
    idempotency_key = Column(String(255), unique=True, nullable=False)
    initiated_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order", back_populates="refunds")
