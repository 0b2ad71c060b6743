"""UserEntitlement model"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from payhook.models.base import Base


class EntitlementType:
    MARKETPLACE_SLOT = "MARKETPLACE_SLOT"
    PROMO_TOKENS = "PROMO_TOKENS"


class EntitlementSource:
    ADDON_PURCHASED = "ADDON_PURCHASED"
    PROMO = "PROMO"


class EntitlementStatus:
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class UserEntitlement(Base):
    """Grant produced by an add-on or promo purchase"""
    __tablename__ = "user_entitlements"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    entitlement_type = Column(String(30), nullable=False)
    source = Column(String(30), nullable=False)
    bot_type = Column(String(50), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default=EntitlementStatus.ACTIVE, index=True)
    source_event_id = Column(String(255), nullable=False, index=True)  # RawEvent.provider_event_id
    source_transaction_id = Column(String(255), nullable=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", back_populates="entitlements")

    __table_args__ = (
        Index('ix_user_entitlements_user_status', 'user_id', 'status'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "entitlement_type": self.entitlement_type,
            "source": self.source,
            "bot_type": self.bot_type,
            "quantity": self.quantity,
            "status": self.status,
            "source_event_id": self.source_event_id,
            "source_transaction_id": self.source_transaction_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
