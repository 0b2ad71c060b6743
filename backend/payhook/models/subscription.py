"""Subscription model"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from payhook.models.base import Base


class SubscriptionStatus:
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    ACTIVE = "ACTIVE"
    GRACE = "GRACE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"
    CHARGEBACK = "CHARGEBACK"
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    UNKNOWN = "UNKNOWN"


class Subscription(Base):
    """User subscription derived from provider events"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    plan_id = Column(String(100), nullable=False)
    status = Column(String(30), nullable=False, default=SubscriptionStatus.UNKNOWN)
    external_customer_id = Column(String(255), nullable=True, index=True)  # provider customer id (CPF)
    last_transaction_id = Column(String(255), nullable=True)  # order that last activated/renewed it
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", back_populates="subscription")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "external_customer_id": self.external_customer_id,
            "last_transaction_id": self.last_transaction_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
