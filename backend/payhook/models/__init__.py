"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from payhook.models.base import Base
from payhook.models.user import User
from payhook.models.raw_event import RawEvent
from payhook.models.payment import Payment
from payhook.models.subscription import Subscription
from payhook.models.product_mapping import ProductMapping
from payhook.models.entitlement import UserEntitlement
from payhook.models.audit_log import AuditLog

# Export all for convenience
__all__ = [
    "Base", "User", "RawEvent", "Payment", "Subscription",
    "ProductMapping", "UserEntitlement", "AuditLog"
]
