from sqlalchemy import Column, Integer, String, DateTime, Index
from datetime import datetime
from storefront.models.user import Base


class RateLimitHit(Base):
    __tablename__ = "rate_limit_hits"
    __table_args__ = (Index("ix_rate_limit_hits_key_created", "key", "created_at"),)

    id = Column(Integer, primary_key=True)
    key = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RateLimitBucket(Base):
    """One row per limiter key; locked for update so counting and recording a hit is serialized per key."""

    __tablename__ = "rate_limit_buckets"

    key = Column(String(255), primary_key=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
