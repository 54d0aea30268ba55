import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, Text, JSON, ForeignKey, DateTime, Enum, UniqueConstraint
from sqlalchemy.orm import relationship

from storefront.models.user import Base


class ReturnStatus(str, enum.Enum):
    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PROCESSED = "PROCESSED"


class ReturnRequest(Base):
    __tablename__ = "return_requests"
    __table_args__ = (
        UniqueConstraint("order_id", "user_id", name="uq_return_request_order_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    reason = Column(String(500), nullable=False)
    description = Column(Text)
    images = Column(JSON, default=list)
    status = Column(Enum(ReturnStatus, native_enum=False, length=20), default=ReturnStatus.REQUESTED, nullable=False)
    admin_note = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("Order", back_populates="return_requests")
    user = relationship("User")
