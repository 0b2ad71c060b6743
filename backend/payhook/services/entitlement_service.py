"""Add-on and promo entitlements"""
import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from payhook.core.config import settings
from payhook.models.entitlement import (
    EntitlementSource,
    EntitlementStatus,
    EntitlementType,
    UserEntitlement,
)
from payhook.services import audit_service
from payhook.utils.time import utcnow

logger = logging.getLogger(__name__)


def _already_granted(db: Session, source_event_id: str) -> bool:
    return db.query(UserEntitlement).filter(UserEntitlement.source_event_id == source_event_id).first() is not None


def grant_marketplace_slots(
    db: Session,
    user_id: int,
    quantity: int,
    source_event_id: str,
    source_transaction_id: Optional[str] = None,
    actor: Optional[str] = None
) -> List[UserEntitlement]:
    """One MARKETPLACE_SLOT entitlement per purchased slot; nothing if this event already granted"""
    if _already_granted(db, source_event_id):
        logger.info(f"Entitlements for event {source_event_id} already granted")
        return []

    granted = []
    for _ in range(max(quantity or 1, 1)):
        entitlement = UserEntitlement(
            user_id=user_id,
            entitlement_type=EntitlementType.MARKETPLACE_SLOT,
            source=EntitlementSource.ADDON_PURCHASED,
            quantity=1,
            status=EntitlementStatus.ACTIVE,
            source_event_id=source_event_id,
            source_transaction_id=source_transaction_id
        )
        db.add(entitlement)
        granted.append(entitlement)
    db.flush()

    for entitlement in granted:
        audit_service.log_action(
            db, audit_service.ENTITLEMENT_CREATED, "entitlement", entitlement.id,
            actor=actor, after=entitlement.to_dict(), metadata={"event_id": source_event_id}
        )
    logger.info(f"Granted {len(granted)} marketplace slot(s) to user {user_id}")
    return granted


def grant_promo_tokens(
    db: Session,
    user_id: int,
    quantity: int,
    bot_type: Optional[str],
    source_event_id: str,
    source_transaction_id: Optional[str] = None,
    actor: Optional[str] = None
) -> Optional[UserEntitlement]:
    """One PROMO_TOKENS entitlement carrying the pack size; nothing if this event already granted"""
    if _already_granted(db, source_event_id):
        logger.info(f"Entitlements for event {source_event_id} already granted")
        return None

    expires_at = None
    if settings.PROMO_ENTITLEMENT_DAYS:
        expires_at = utcnow() + timedelta(days=settings.PROMO_ENTITLEMENT_DAYS)

    entitlement = UserEntitlement(
        user_id=user_id,
        entitlement_type=EntitlementType.PROMO_TOKENS,
        source=EntitlementSource.PROMO,
        bot_type=bot_type,
        quantity=max(quantity or 1, 1),
        status=EntitlementStatus.ACTIVE,
        source_event_id=source_event_id,
        source_transaction_id=source_transaction_id,
        expires_at=expires_at
    )
    db.add(entitlement)
    db.flush()
    audit_service.log_action(
        db, audit_service.ENTITLEMENT_CREATED, "entitlement", entitlement.id,
        actor=actor, after=entitlement.to_dict(), metadata={"event_id": source_event_id}
    )
    logger.info(f"Granted {entitlement.quantity} promo tokens ({bot_type}) to user {user_id}")
    return entitlement


def _revoke(db: Session, entitlements: List[UserEntitlement], reason: str, actor: Optional[str]) -> int:
    for entitlement in entitlements:
        before = entitlement.to_dict()
        entitlement.status = EntitlementStatus.REVOKED
        audit_service.log_action(
            db, audit_service.ENTITLEMENT_REVOKED, "entitlement", entitlement.id,
            actor=actor, before=before, after=entitlement.to_dict(), metadata={"reason": reason}
        )
    return len(entitlements)


def revoke_for_transaction(db: Session, user_id: int, transaction_id: str, reason: str, actor: Optional[str] = None) -> int:
    """Revoke the active entitlements bought by one transaction"""
    entitlements = db.query(UserEntitlement).filter(
        UserEntitlement.user_id == user_id,
        UserEntitlement.source_transaction_id == transaction_id,
        UserEntitlement.status == EntitlementStatus.ACTIVE
    ).all()
    count = _revoke(db, entitlements, reason, actor)
    if count:
        logger.info(f"Revoked {count} entitlement(s) of user {user_id} for transaction {transaction_id} ({reason})")
    return count


def revoke_all_for_user(db: Session, user_id: int, reason: str, actor: Optional[str] = None) -> int:
    """Revoke every active entitlement of a user"""
    entitlements = db.query(UserEntitlement).filter(
        UserEntitlement.user_id == user_id,
        UserEntitlement.status == EntitlementStatus.ACTIVE
    ).all()
    count = _revoke(db, entitlements, reason, actor)
    if count:
        logger.warning(f"Revoked all {count} entitlement(s) of user {user_id} ({reason})")
    return count


def expire_entitlements(db: Session, now=None, actor: Optional[str] = None) -> int:
    """Mark ACTIVE entitlements past expires_at as EXPIRED. Caller commits."""
    now = now or utcnow()
    entitlements = db.query(UserEntitlement).filter(
        UserEntitlement.status == EntitlementStatus.ACTIVE,
        UserEntitlement.expires_at.isnot(None),
        UserEntitlement.expires_at < now
    ).all()
    for entitlement in entitlements:
        before = entitlement.to_dict()
        entitlement.status = EntitlementStatus.EXPIRED
        audit_service.log_action(
            db, audit_service.ENTITLEMENT_EXPIRED, "entitlement", entitlement.id,
            actor=actor, before=before, after=entitlement.to_dict()
        )
    return len(entitlements)
