"""ProductMapping model"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String

from payhook.models.base import Base


class ProductKind:
    SUBSCRIPTION = "SUBSCRIPTION"
    ADDON_MARKETPLACE = "ADDON_MARKETPLACE"
    PROMO_TOKEN_PACK = "PROMO_TOKEN_PACK"


class ProductMapping(Base):
    """Provider product code -> what the purchase grants. Maintained by the admin service."""
    __tablename__ = "product_mappings"

    id = Column(Integer, primary_key=True, index=True)
    provider_product_id = Column(String(255), unique=True, nullable=False, index=True)
    product_name = Column(String(255), nullable=True)
    kind = Column(String(30), nullable=False)
    plan_id = Column(String(100), nullable=True)  # SUBSCRIPTION only
    bot_type = Column(String(50), nullable=True)  # PROMO_TOKEN_PACK only
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
