"""Subscription lifecycle transitions

Only the event processor calls into this module. Every transition that changes
a row writes one audit entry on the caller's transaction.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from payhook.models.payment import Payment
from payhook.models.subscription import Subscription, SubscriptionStatus
from payhook.models.user import User
from payhook.services import audit_service
from payhook.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

MONTHLY_PERIOD = timedelta(days=30)
YEARLY_PERIOD = timedelta(days=365)

_YEARLY_FREQUENCIES = ("yearly", "annual", "annually", "year")

# A subscription left in one of these by its own transaction stays there
_REVERSED_STATUSES = (SubscriptionStatus.REFUNDED, SubscriptionStatus.CHARGEBACK)


def billing_period(plan_frequency: Optional[str] = None, plan_id: Optional[str] = None) -> timedelta:
    """Yearly plans (by frequency or plan id) get a year, everything else a month"""
    for value in (plan_frequency, plan_id):
        if value and any(word in value.lower() for word in _YEARLY_FREQUENCIES):
            return YEARLY_PERIOD
    return MONTHLY_PERIOD


def compute_expiry(
    access_until: Optional[datetime],
    plan_frequency: Optional[str] = None,
    plan_id: Optional[str] = None,
    base: Optional[datetime] = None
) -> datetime:
    if access_until:
        return as_utc(access_until)
    start = as_utc(base) if base else utcnow()
    now = utcnow()
    if start < now:
        start = now
    return start + billing_period(plan_frequency, plan_id)


def get_subscription_for_user(db: Session, user_id: int) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.user_id == user_id).first()


def get_subscription_by_customer(db: Session, external_customer_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.external_customer_id == external_customer_id).first()


def _charged_at(payment: Payment):
    return as_utc(payment.paid_at or payment.created_at), payment.id or 0


def is_superseded(db: Session, sub: Subscription, transaction_id: Optional[str]) -> bool:
    """Whether sub already reflects this transaction's reversal or a later transaction"""
    if not transaction_id or not sub.last_transaction_id:
        return False
    if sub.last_transaction_id == transaction_id:
        return sub.status in _REVERSED_STATUSES

    payments = {
        p.transaction_id: p
        for p in db.query(Payment).filter(
            Payment.transaction_id.in_([transaction_id, sub.last_transaction_id])
        ).all()
    }
    current = payments.get(sub.last_transaction_id)
    incoming = payments.get(transaction_id)
    if current is None or incoming is None:
        return False
    return _charged_at(current) > _charged_at(incoming)


def _snapshot(sub: Subscription) -> dict:
    return {
        "plan_id": sub.plan_id,
        "status": sub.status,
        "external_customer_id": sub.external_customer_id,
        "last_transaction_id": sub.last_transaction_id,
        "expires_at": as_utc(sub.expires_at).isoformat() if sub.expires_at else None,
    }


def activate_subscription(
    db: Session,
    user: User,
    plan_id: str,
    transaction_id: Optional[str],
    access_until: Optional[datetime] = None,
    plan_frequency: Optional[str] = None,
    external_customer_id: Optional[str] = None,
    actor: Optional[str] = None,
    metadata: Optional[dict] = None
) -> Tuple[Subscription, bool]:
    """Create or activate the user's subscription at plan_id. Returns (subscription, changed)."""
    sub = get_subscription_for_user(db, user.id)

    if sub is None:
        sub = Subscription(
            user_id=user.id,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE,
            external_customer_id=external_customer_id,
            last_transaction_id=transaction_id,
            expires_at=compute_expiry(access_until, plan_frequency, plan_id)
        )
        db.add(sub)
        db.flush()
        audit_service.log_action(
            db, audit_service.SUBSCRIPTION_ACTIVATED, "subscription", sub.id,
            actor=actor, after=_snapshot(sub), metadata=metadata
        )
        logger.info(f"Activated new subscription for user {user.id} at plan {plan_id}")
        return sub, True

    if (
        sub.status == SubscriptionStatus.ACTIVE
        and transaction_id
        and sub.last_transaction_id == transaction_id
        and sub.plan_id == plan_id
    ):
        return sub, False
    if is_superseded(db, sub, transaction_id):
        logger.info(f"Subscription {sub.id} already past transaction {transaction_id}, not re-activating")
        return sub, False

    before = _snapshot(sub)
    sub.plan_id = plan_id
    sub.status = SubscriptionStatus.ACTIVE
    sub.last_transaction_id = transaction_id
    sub.expires_at = compute_expiry(access_until, plan_frequency, plan_id)
    if external_customer_id:
        sub.external_customer_id = external_customer_id

    audit_service.log_action(
        db, audit_service.SUBSCRIPTION_ACTIVATED, "subscription", sub.id,
        actor=actor, before=before, after=_snapshot(sub), metadata=metadata
    )
    logger.info(f"Activated subscription for user {user.id}: {before['status']} -> ACTIVE at plan {plan_id}")
    return sub, True


def renew_subscription(
    db: Session,
    user: User,
    plan_id: Optional[str],
    transaction_id: Optional[str],
    access_until: Optional[datetime] = None,
    plan_frequency: Optional[str] = None,
    external_customer_id: Optional[str] = None,
    actor: Optional[str] = None,
    metadata: Optional[dict] = None
) -> Tuple[Subscription, bool]:
    """Extend expires_at by one period (or to access_until), re-activating if needed"""
    sub = get_subscription_for_user(db, user.id)
    if sub is None:
        if not plan_id:
            raise ValueError(f"Cannot renew: user {user.id} has no subscription and the product maps to no plan")
        return activate_subscription(
            db, user, plan_id, transaction_id, access_until, plan_frequency,
            external_customer_id, actor=actor, metadata=metadata
        )

    if sub.status == SubscriptionStatus.ACTIVE and transaction_id and sub.last_transaction_id == transaction_id:
        return sub, False
    if is_superseded(db, sub, transaction_id):
        logger.info(f"Subscription {sub.id} already past transaction {transaction_id}, not renewing")
        return sub, False

    before = _snapshot(sub)
    sub.expires_at = compute_expiry(access_until, plan_frequency, plan_id or sub.plan_id, base=sub.expires_at)
    sub.status = SubscriptionStatus.ACTIVE
    sub.last_transaction_id = transaction_id
    if plan_id:
        sub.plan_id = plan_id
    if external_customer_id and not sub.external_customer_id:
        sub.external_customer_id = external_customer_id

    audit_service.log_action(
        db, audit_service.SUBSCRIPTION_RENEWED, "subscription", sub.id,
        actor=actor, before=before, after=_snapshot(sub), metadata=metadata
    )
    logger.info(f"Renewed subscription for user {user.id} until {sub.expires_at}")
    return sub, True


def mark_pending_confirmation(
    db: Session,
    user: User,
    plan_id: str,
    external_customer_id: Optional[str] = None,
    actor: Optional[str] = None,
    metadata: Optional[dict] = None
) -> Tuple[Optional[Subscription], bool]:
    """Create a PENDING_CONFIRMATION subscription; existing subscriptions are left alone"""
    sub = get_subscription_for_user(db, user.id)
    if sub is not None:
        return sub, False

    sub = Subscription(
        user_id=user.id,
        plan_id=plan_id,
        status=SubscriptionStatus.PENDING_CONFIRMATION,
        external_customer_id=external_customer_id
    )
    db.add(sub)
    db.flush()
    audit_service.log_action(
        db, audit_service.SUBSCRIPTION_CREATED, "subscription", sub.id,
        actor=actor, after=_snapshot(sub), metadata=metadata
    )
    logger.info(f"Created pending subscription for user {user.id} at plan {plan_id}")
    return sub, True


def set_subscription_status(
    db: Session,
    sub: Subscription,
    status: str,
    action: str = audit_service.SUBSCRIPTION_STATUS_CHANGED,
    actor: Optional[str] = None,
    metadata: Optional[dict] = None
) -> bool:
    """Move to status (PAST_DUE, CANCELED, REFUNDED, CHARGEBACK). Returns whether anything changed."""
    if sub.status == status:
        return False
    before = _snapshot(sub)
    sub.status = status
    audit_service.log_action(
        db, action, "subscription", sub.id,
        actor=actor, before=before, after=_snapshot(sub), metadata=metadata
    )
    logger.info(f"Subscription {sub.id} for user {sub.user_id}: {before['status']} -> {status}")
    return True
