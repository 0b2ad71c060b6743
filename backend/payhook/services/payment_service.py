"""Payment rows and the finance read models"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from payhook.core.config import settings
from payhook.models.payment import Payment, PaymentStatus
from payhook.models.raw_event import ProcessingStatus, RawEvent
from payhook.models.subscription import Subscription, SubscriptionStatus
from payhook.services import audit_service

logger = logging.getLogger(__name__)

# refunded/chargeback are final; paid is never moved back to pending
_STATUS_RANK = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.PAID: 1,
    PaymentStatus.REFUNDED: 2,
    PaymentStatus.CHARGEBACK: 2,
}


def cents_to_amount(amount_cents: Optional[int]) -> Decimal:
    if not amount_cents:
        return Decimal("0.00")
    return (Decimal(int(amount_cents)) / Decimal(100)).quantize(Decimal("0.01"))


def get_payment_by_transaction(db: Session, transaction_id: str) -> Optional[Payment]:
    return db.query(Payment).filter(Payment.transaction_id == transaction_id).first()


def _snapshot(payment: Payment) -> dict:
    return {
        "user_id": payment.user_id,
        "transaction_id": payment.transaction_id,
        "amount": str(payment.amount) if payment.amount is not None else None,
        "currency": payment.currency,
        "status": payment.status,
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
    }


def create_or_update_payment(
    db: Session,
    user_id: int,
    transaction_id: str,
    status: str,
    amount_cents: Optional[int] = None,
    currency: Optional[str] = None,
    paid_at: Optional[datetime] = None,
    actor: Optional[str] = None,
    metadata: Optional[dict] = None,
    force_status: bool = False,
    create_action: str = audit_service.PAYMENT_CREATED,
    update_action: str = audit_service.PAYMENT_UPDATED
) -> Tuple[Payment, bool]:
    """Upsert the Payment for a transaction id. Returns (payment, changed).

    Staged on the caller's transaction; an audit entry is written only when
    something changed, so re-applying the same event is silent.
    """
    payment = get_payment_by_transaction(db, transaction_id)

    if payment is None:
        payment = Payment(
            user_id=user_id,
            transaction_id=transaction_id,
            amount=cents_to_amount(amount_cents),
            currency=(currency or settings.DEFAULT_CURRENCY).upper(),
            status=status,
            provider=settings.PROVIDER_NAME,
            paid_at=paid_at if status == PaymentStatus.PAID else None
        )
        db.add(payment)
        db.flush()
        audit_service.log_action(
            db, create_action, "payment", payment.id,
            actor=actor, after=_snapshot(payment), metadata=metadata
        )
        logger.info(f"Created payment {transaction_id} ({status}) for user {user_id}")
        return payment, True

    before = _snapshot(payment)

    new_status = payment.status
    if force_status or _STATUS_RANK.get(status, 0) >= _STATUS_RANK.get(payment.status, 0):
        new_status = status
    else:
        logger.info(f"Keeping payment {transaction_id} at {payment.status}, ignoring {status}")

    if new_status != payment.status:
        payment.status = new_status
    if amount_cents:
        amount = cents_to_amount(amount_cents)
        if payment.amount is None or Decimal(payment.amount) != amount:
            payment.amount = amount
    if currency and payment.currency != currency.upper():
        payment.currency = currency.upper()
    if payment.status == PaymentStatus.PAID and payment.paid_at is None:
        payment.paid_at = paid_at

    after = _snapshot(payment)
    if after == before:
        return payment, False

    audit_service.log_action(
        db, update_action, "payment", payment.id,
        actor=actor, before=before, after=after, metadata=metadata
    )
    logger.info(f"Updated payment {transaction_id}: {before['status']} -> {after['status']}")
    return payment, True


def set_payment_status(
    db: Session,
    transaction_id: str,
    status: str,
    action: str,
    actor: Optional[str] = None,
    metadata: Optional[dict] = None
) -> Optional[Payment]:
    """Move an existing payment to refunded/chargeback. Returns None if there is no payment."""
    payment = get_payment_by_transaction(db, transaction_id)
    if payment is None:
        return None
    if payment.status == status:
        return payment

    before = _snapshot(payment)
    payment.status = status
    audit_service.log_action(
        db, action, "payment", payment.id,
        actor=actor, before=before, after=_snapshot(payment), metadata=metadata
    )
    logger.info(f"Payment {transaction_id}: {before['status']} -> {status}")
    return payment


def list_payments(
    db: Session,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    page: int = 1,
    page_size: int = 50
) -> Tuple[List[Payment], int]:
    query = db.query(Payment)
    if status:
        query = query.filter(Payment.status == status)
    if user_id:
        query = query.filter(Payment.user_id == user_id)
    total = query.count()
    items = (
        query.order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total


def list_raw_events(
    db: Session,
    status: Optional[str] = None,
    event_type: Optional[str] = None,
    page: int = 1,
    page_size: int = 50
) -> Tuple[List[RawEvent], int]:
    query = db.query(RawEvent)
    if status:
        query = query.filter(RawEvent.processing_status == status)
    if event_type:
        query = query.filter(RawEvent.event_type == event_type)
    total = query.count()
    items = (
        query.order_by(RawEvent.received_at.desc(), RawEvent.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total


def get_payments_summary(db: Session) -> Dict:
    """Headline numbers for the finance dashboard"""
    counts = dict(
        db.query(Payment.status, func.count(Payment.id)).group_by(Payment.status).all()
    )
    amounts = dict(
        db.query(Payment.status, func.coalesce(func.sum(Payment.amount), 0)).group_by(Payment.status).all()
    )
    refunded_amount = Decimal(str(amounts.get(PaymentStatus.REFUNDED, 0) or 0)) + \
        Decimal(str(amounts.get(PaymentStatus.CHARGEBACK, 0) or 0))

    active_subscriptions = db.query(func.count(Subscription.id)).filter(
        Subscription.status == SubscriptionStatus.ACTIVE
    ).scalar() or 0
    events_pending = db.query(func.count(RawEvent.id)).filter(
        RawEvent.processing_status == ProcessingStatus.PENDING
    ).scalar() or 0
    events_failed = db.query(func.count(RawEvent.id)).filter(
        RawEvent.processing_status == ProcessingStatus.FAILED
    ).scalar() or 0

    return {
        "total_payments": sum(counts.values()),
        "paid_count": counts.get(PaymentStatus.PAID, 0),
        "pending_count": counts.get(PaymentStatus.PENDING, 0),
        "refunded_count": counts.get(PaymentStatus.REFUNDED, 0),
        "chargeback_count": counts.get(PaymentStatus.CHARGEBACK, 0),
        "gross_revenue": str(Decimal(str(amounts.get(PaymentStatus.PAID, 0) or 0)).quantize(Decimal("0.01"))),
        "refunded_amount": str(refunded_amount.quantize(Decimal("0.01"))),
        "active_subscriptions": active_subscriptions,
        "events_pending": events_pending,
        "events_failed": events_failed,
    }
