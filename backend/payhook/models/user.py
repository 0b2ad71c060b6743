"""User model"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String
from sqlalchemy.orm import relationship

from payhook.models.base import Base


class User(Base):
    """User accounts (owned by the account service; read here for correlation and admin checks)"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    admin_permissions = Column(JSON, default=list, nullable=False)  # e.g. ["finance"]
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscription = relationship("Subscription", back_populates="user", uselist=False, cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="user", cascade="all, delete-orphan")
    entitlements = relationship("UserEntitlement", back_populates="user", cascade="all, delete-orphan")
