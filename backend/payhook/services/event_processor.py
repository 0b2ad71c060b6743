"""Event processor: turns one stored RawEvent into state changes

process_event() is safe to call redundantly or concurrently for the same event:
- an already PROCESSED event is skipped unless forced
- all mutations, their audit entries and the PROCESSED mark share one commit
- any failure rolls that commit back and records FAILED with the error text
- a FAILED event is only retried through explicit reprocessing
- it never raises
"""
from typing import Callable, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from payhook.core.errors import ProcessingError
from payhook.core.logging import webhook_logger
from payhook.core.metrics import events_processed_counter
from payhook.core.otel import event_span
from payhook.models.payment import REVERSED_PAYMENT_STATUSES, Payment, PaymentStatus
from payhook.models.product_mapping import ProductKind, ProductMapping
from payhook.models.raw_event import ProcessingStatus, RawEvent
from payhook.models.subscription import SubscriptionStatus
from payhook.models.user import User
from payhook.schemas.webhooks import NormalizedEvent
from payhook.services import (
    audit_service,
    entitlement_service,
    event_store,
    payment_service,
    subscription_service,
)
from payhook.services.payload_decoder import (
    CHARGEBACK,
    PAYMENT_CONFIRMED,
    PAYMENT_PENDING,
    REFUND,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_LATE,
    SUBSCRIPTION_RENEWED,
    decode_payload,
)
from payhook.services.product_mapping_service import get_mapping
from payhook.utils.time import utcnow

logger = webhook_logger

# Returned when the event row does not exist
NOT_FOUND = "NOT_FOUND"


class _Context:
    """Everything a handler needs for one event"""

    def __init__(self, db: Session, event: RawEvent, normalized: NormalizedEvent, actor: str):
        self.db = db
        self.event = event
        self.normalized = normalized
        self.actor = actor
        self.transaction_id = event.transaction_id or normalized.transaction_id
        self._user = None
        self._mapping = None
        self._mapping_loaded = False

    @property
    def payment_transaction_id(self) -> str:
        return self.transaction_id or self.event.provider_event_id

    @property
    def metadata(self) -> dict:
        return {"event_id": self.event.provider_event_id, "event_type": self.event.event_type}

    @property
    def user(self) -> User:
        if self._user is None:
            self._user = resolve_user(self.db, self.normalized)
        return self._user

    @property
    def mapping(self) -> Optional[ProductMapping]:
        if not self._mapping_loaded:
            self._mapping = get_mapping(self.db, self.normalized.product_id, self.normalized.product_name)
            self._mapping_loaded = True
        return self._mapping

    def require_mapping(self) -> ProductMapping:
        mapping = self.mapping
        if mapping is None:
            raise ProcessingError(
                f"No product mapping for product id '{self.normalized.product_id}'"
                f" (name '{self.normalized.product_name}')"
            )
        return mapping


def resolve_user(db: Session, normalized: NormalizedEvent) -> User:
    """Subscription.external_customer_id first, then case-insensitive email"""
    if normalized.customer_id:
        sub = subscription_service.get_subscription_by_customer(db, normalized.customer_id)
        if sub is not None:
            user = db.query(User).filter(User.id == sub.user_id).first()
            if user is not None:
                return user
    if normalized.customer_email:
        user = db.query(User).filter(
            func.lower(User.email) == normalized.customer_email.strip().lower()
        ).first()
        if user is not None:
            return user
    raise ProcessingError(
        f"No user found for customer '{normalized.customer_id}' / email '{normalized.customer_email}'"
    )


def _record_payment(ctx: _Context, status: str) -> Payment:
    n = ctx.normalized
    payment, _ = payment_service.create_or_update_payment(
        ctx.db,
        user_id=ctx.user.id,
        transaction_id=ctx.payment_transaction_id,
        status=status,
        amount_cents=n.amount_cents,
        currency=n.currency,
        paid_at=(n.approved_at or utcnow()) if status == PaymentStatus.PAID else None,
        actor=ctx.actor,
        metadata=ctx.metadata
    )
    return payment


def _is_reversed(ctx: _Context, payment: Payment) -> bool:
    """A refund or chargeback for this transaction was already applied"""
    if payment.status in REVERSED_PAYMENT_STATUSES:
        logger.warning(
            f"Transaction {payment.transaction_id} is {payment.status}, "
            f"{ctx.event.event_type} {ctx.event.provider_event_id} grants nothing"
        )
        return True
    return False


def _handle_payment_confirmed(ctx: _Context) -> None:
    mapping = ctx.require_mapping()
    user = ctx.user
    if _is_reversed(ctx, _record_payment(ctx, PaymentStatus.PAID)):
        return

    if mapping.kind == ProductKind.SUBSCRIPTION:
        if not mapping.plan_id:
            raise ProcessingError(f"Product mapping {mapping.provider_product_id} has no plan_id")
        subscription_service.activate_subscription(
            ctx.db, user, mapping.plan_id, ctx.payment_transaction_id,
            access_until=ctx.normalized.access_until,
            plan_frequency=ctx.normalized.plan_frequency,
            external_customer_id=ctx.normalized.customer_id,
            actor=ctx.actor, metadata=ctx.metadata
        )
    elif mapping.kind == ProductKind.ADDON_MARKETPLACE:
        entitlement_service.grant_marketplace_slots(
            ctx.db, user.id, mapping.quantity, ctx.event.provider_event_id,
            source_transaction_id=ctx.payment_transaction_id, actor=ctx.actor
        )
    elif mapping.kind == ProductKind.PROMO_TOKEN_PACK:
        entitlement_service.grant_promo_tokens(
            ctx.db, user.id, mapping.quantity, mapping.bot_type, ctx.event.provider_event_id,
            source_transaction_id=ctx.payment_transaction_id, actor=ctx.actor
        )
    else:
        raise ProcessingError(f"Unknown product kind '{mapping.kind}' for {mapping.provider_product_id}")


def _handle_subscription_renewed(ctx: _Context) -> None:
    mapping = ctx.mapping
    plan_id = mapping.plan_id if mapping is not None and mapping.kind == ProductKind.SUBSCRIPTION else None
    user = ctx.user
    if _is_reversed(ctx, _record_payment(ctx, PaymentStatus.PAID)):
        return
    try:
        subscription_service.renew_subscription(
            ctx.db, user, plan_id, ctx.payment_transaction_id,
            access_until=ctx.normalized.access_until,
            plan_frequency=ctx.normalized.plan_frequency,
            external_customer_id=ctx.normalized.customer_id,
            actor=ctx.actor, metadata=ctx.metadata
        )
    except ValueError as e:
        raise ProcessingError(str(e))


def _handle_payment_pending(ctx: _Context) -> None:
    user = ctx.user
    if _is_reversed(ctx, _record_payment(ctx, PaymentStatus.PENDING)):
        return
    mapping = ctx.mapping
    if mapping is not None and mapping.kind == ProductKind.SUBSCRIPTION and mapping.plan_id:
        subscription_service.mark_pending_confirmation(
            ctx.db, user, mapping.plan_id,
            external_customer_id=ctx.normalized.customer_id,
            actor=ctx.actor, metadata=ctx.metadata
        )


def _set_subscription(ctx: _Context, status: str, action: str) -> None:
    sub = subscription_service.get_subscription_for_user(ctx.db, ctx.user.id)
    if sub is None:
        logger.warning(f"{ctx.event.event_type} for user {ctx.user.id} without a subscription, nothing to change")
        return
    subscription_service.set_subscription_status(
        ctx.db, sub, status, action=action, actor=ctx.actor, metadata=ctx.metadata
    )


def _handle_subscription_late(ctx: _Context) -> None:
    _set_subscription(ctx, SubscriptionStatus.PAST_DUE, audit_service.SUBSCRIPTION_STATUS_CHANGED)


def _handle_subscription_canceled(ctx: _Context) -> None:
    _set_subscription(ctx, SubscriptionStatus.CANCELED, audit_service.SUBSCRIPTION_CANCELED)


def _handle_reversal(ctx: _Context) -> None:
    """REFUND and CHARGEBACK"""
    is_chargeback = ctx.event.event_type == CHARGEBACK
    user = ctx.user
    tx = ctx.payment_transaction_id

    status = PaymentStatus.CHARGEBACK if is_chargeback else PaymentStatus.REFUNDED
    action = audit_service.PAYMENT_CHARGEBACK if is_chargeback else audit_service.PAYMENT_REFUNDED

    payment = payment_service.set_payment_status(
        ctx.db, tx, status, action, actor=ctx.actor, metadata=ctx.metadata
    )
    if payment is None:
        # Arrived before its purchase: the reversed row keeps the late purchase from granting
        logger.warning(f"{ctx.event.event_type} for transaction {tx} before its purchase, recording it as {status}")
        payment_service.create_or_update_payment(
            ctx.db,
            user_id=user.id,
            transaction_id=tx,
            status=status,
            amount_cents=ctx.normalized.amount_cents,
            currency=ctx.normalized.currency,
            actor=ctx.actor,
            metadata=ctx.metadata,
            create_action=action
        )

    reason = ctx.event.event_type.lower()
    if is_chargeback:
        entitlement_service.revoke_all_for_user(ctx.db, user.id, reason, actor=ctx.actor)
    else:
        entitlement_service.revoke_for_transaction(ctx.db, user.id, tx, reason, actor=ctx.actor)

    sub = subscription_service.get_subscription_for_user(ctx.db, user.id)
    if sub is None:
        return
    mapping = ctx.mapping
    bought_by_transaction = sub.last_transaction_id == tx
    is_subscription_product = mapping is not None and mapping.kind == ProductKind.SUBSCRIPTION
    if bought_by_transaction or is_subscription_product:
        subscription_service.set_subscription_status(
            ctx.db, sub,
            SubscriptionStatus.CHARGEBACK if is_chargeback else SubscriptionStatus.REFUNDED,
            actor=ctx.actor, metadata=ctx.metadata
        )


HANDLERS: Dict[str, Callable[[_Context], None]] = {
    PAYMENT_CONFIRMED: _handle_payment_confirmed,
    SUBSCRIPTION_RENEWED: _handle_subscription_renewed,
    PAYMENT_PENDING: _handle_payment_pending,
    SUBSCRIPTION_LATE: _handle_subscription_late,
    SUBSCRIPTION_CANCELED: _handle_subscription_canceled,
    REFUND: _handle_reversal,
    CHARGEBACK: _handle_reversal,
}


def _apply(db: Session, event: RawEvent, actor: str) -> None:
    if not isinstance(event.payload, dict):
        raise ProcessingError("Stored payload is not a JSON object")
    normalized = decode_payload(event.payload)
    handler = HANDLERS.get(event.event_type)
    if handler is None:
        logger.info(f"No handler for event type {event.event_type} ({event.provider_event_id}), marking processed")
        return
    handler(_Context(db, event, normalized, actor))


def _mark_failed(db: Session, event_id: str, error: str, actor: str) -> None:
    """Record the failure on a fresh transaction"""
    try:
        event = event_store.get_event(db, event_id)
        if event is None:
            return
        event_store.mark_failed(db, event, error)
        audit_service.log_action(
            db, audit_service.WEBHOOK_FAILED, "raw_event", event_id,
            actor=actor, metadata={"error": error, "event_type": event.event_type}
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Could not record failure for event {event_id}: {e}")


def process_event(db: Session, event_id: str, force: bool = False, actor: Optional[str] = None) -> str:
    """Process one stored event.

    Returns PROCESSED, FAILED (this run failed; a forced run keeps a PROCESSED
    row PROCESSED) or NOT_FOUND.
    """
    actor = actor or audit_service.SYSTEM_ACTOR
    event = event_store.get_event(db, event_id)
    if event is None:
        logger.warning(f"Event {event_id} not found")
        return NOT_FOUND
    if event.processing_status == ProcessingStatus.PROCESSED and not force:
        logger.info(f"Event {event_id} already processed")
        return ProcessingStatus.PROCESSED
    if event.processing_status == ProcessingStatus.FAILED and not force:
        logger.info(f"Event {event_id} is FAILED, waiting for explicit reprocessing")
        return ProcessingStatus.FAILED

    with event_span(event):
        return _run(db, event, actor)


def _run(db: Session, event: RawEvent, actor: str) -> str:
    event_id = event.provider_event_id
    was_processed = event.processing_status == ProcessingStatus.PROCESSED
    try:
        _apply(db, event, actor)
        if not was_processed:
            event_store.mark_processed(db, event)
            audit_service.log_action(
                db, audit_service.WEBHOOK_PROCESSED, "raw_event", event_id,
                actor=actor, metadata={"event_type": event.event_type}
            )
        else:
            event.error = None
        db.commit()
    except Exception as e:
        db.rollback()
        error = str(e) or e.__class__.__name__
        if isinstance(e, ProcessingError):
            logger.warning(f"Event {event_id} failed: {error}")
        else:
            logger.error(f"Event {event_id} failed: {error}", exc_info=True)
        events_processed_counter.labels(status="failed").inc()
        _mark_failed(db, event_id, error, actor)
        return ProcessingStatus.FAILED

    events_processed_counter.labels(status="processed").inc()
    logger.info(f"Processed event {event_id} ({event.event_type})")
    return ProcessingStatus.PROCESSED


def process_pending_events(db: Session, limit: int = 100) -> Dict[str, int]:
    """Sweep: process PENDING events oldest first"""
    event_ids = [e.provider_event_id for e in event_store.get_pending_events(db, limit)]
    results = {"total": len(event_ids), "processed": 0, "failed": 0}
    for event_id in event_ids:
        status = process_event(db, event_id)
        if status == ProcessingStatus.PROCESSED:
            results["processed"] += 1
        else:
            results["failed"] += 1
    if event_ids:
        logger.info(f"Sweep processed {results['processed']}/{results['total']} pending events ({results['failed']} failed)")
    return results
