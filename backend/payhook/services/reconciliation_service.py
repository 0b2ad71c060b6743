"""Reconciliation between the raw event log and Payment rows, plus operator repairs"""
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from payhook.core.config import settings
from payhook.core.errors import EventNotFoundError, PayhookError, RepairError
from payhook.core.logging import reconciliation_logger
from payhook.core.metrics import reconciliation_discrepancies_gauge
from payhook.models.payment import Payment, PaymentStatus
from payhook.models.raw_event import IdentitySource, ProcessingStatus, RawEvent
from payhook.services import audit_service, event_store, payment_service
from payhook.services.event_processor import process_event, resolve_user
from payhook.services.payload_decoder import (
    IMPLIED_PAYMENT_STATUS,
    PURCHASE_EVENT_TYPES,
    decode_payload,
)
from payhook.utils.time import days_ago, utcnow

logger = reconciliation_logger

# Later outcomes win over earlier ones regardless of delivery order
_OUTCOME_RANK = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.PAID: 1,
    PaymentStatus.REFUNDED: 2,
    PaymentStatus.CHARGEBACK: 2,
}

DISCREPANCY_KINDS = ("paymentsWithoutEvent", "eventsWithoutPayment", "statusMismatch", "unidentifiedEvents")


def event_key(event: RawEvent) -> str:
    """Join key between a raw event and a payment"""
    return event.transaction_id or event.provider_event_id


def _expected_status(events: List[RawEvent]) -> Optional[RawEvent]:
    """Outcome-bearing event that decides the payment status, or None"""
    outcome_events = [e for e in events if e.event_type in IMPLIED_PAYMENT_STATUS]
    if not outcome_events:
        return None
    return max(
        outcome_events,
        key=lambda e: (_OUTCOME_RANK[IMPLIED_PAYMENT_STATUS[e.event_type]], e.received_at, e.id)
    )


def find_discrepancies(db: Session, days: Optional[int] = None, actor: Optional[str] = None) -> Dict:
    """Compare events and payments over the trailing window and classify drift"""
    days = days or settings.RECONCILIATION_WINDOW_DAYS
    since = days_ago(days)

    payments = db.query(Payment).filter(Payment.created_at >= since).all()
    events = (
        db.query(RawEvent)
        .filter(RawEvent.received_at >= since)
        .order_by(RawEvent.received_at.asc(), RawEvent.id.asc())
        .all()
    )

    events_by_key: Dict[str, List[RawEvent]] = defaultdict(list)
    for event in events:
        events_by_key[event_key(event)].append(event)
    payments_by_tx = {p.transaction_id: p for p in payments if p.transaction_id}

    # Events in the window may belong to payments created before it
    missing_keys = [k for k in events_by_key if k not in payments_by_tx]
    if missing_keys:
        for payment in db.query(Payment).filter(Payment.transaction_id.in_(missing_keys)).all():
            payments_by_tx[payment.transaction_id] = payment

    payments_without_event = [
        p.to_dict() for p in payments
        if not p.transaction_id or p.transaction_id not in events_by_key
    ]

    events_without_payment = []
    status_mismatch = []
    for key, key_events in events_by_key.items():
        payment = payments_by_tx.get(key)
        if payment is None:
            for event in key_events:
                if event.identity_source == IdentitySource.SYNTHESIZED:
                    # Reported once, under unidentifiedEvents
                    continue
                events_without_payment.append({
                    "event_id": event.provider_event_id,
                    "transaction_id": event.transaction_id,
                    "event_type": event.event_type,
                    "processing_status": event.processing_status,
                    "expects_payment": event.event_type in PURCHASE_EVENT_TYPES,
                    "received_at": event.received_at.isoformat() if event.received_at else None,
                })
            continue

        deciding = _expected_status(key_events)
        if deciding is None:
            continue
        expected = IMPLIED_PAYMENT_STATUS[deciding.event_type]
        if payment.status != expected:
            status_mismatch.append({
                "transaction_id": key,
                "payment_id": payment.id,
                "payment_status": payment.status,
                "expected_status": expected,
                "event_id": deciding.provider_event_id,
                "event_type": deciding.event_type,
                "processing_status": deciding.processing_status,
            })

    unidentified = [
        e.to_dict() for e in events if e.identity_source == IdentitySource.SYNTHESIZED
    ]

    report = {
        "window_days": days,
        "generated_at": utcnow(),
        "paymentsWithoutEvent": payments_without_event,
        "eventsWithoutPayment": events_without_payment,
        "statusMismatch": status_mismatch,
        "unidentifiedEvents": unidentified,
    }
    counts = {kind: len(report[kind]) for kind in DISCREPANCY_KINDS}
    report["total"] = sum(counts.values())

    for kind, count in counts.items():
        reconciliation_discrepancies_gauge.labels(kind=kind).set(count)

    run_id = report["generated_at"].isoformat()
    audit_service.log_action(
        db, audit_service.RECONCILIATION_RUN, "reconciliation", run_id,
        actor=actor, metadata={"window_days": days, "payments": len(payments), "events": len(events), **counts},
        commit=True
    )
    if report["total"]:
        audit_service.log_action(
            db, audit_service.RECONCILIATION_DISCREPANCY, "reconciliation", run_id,
            actor=actor,
            metadata={
                **counts,
                "payment_transactions": [p["transaction_id"] for p in payments_without_event][:50],
                "event_ids": [e["event_id"] for e in events_without_payment][:50],
                "mismatched_transactions": [m["transaction_id"] for m in status_mismatch][:50],
            },
            commit=True
        )
        logger.warning(f"Reconciliation over {days} days found {report['total']} discrepancies: {counts}")
    else:
        logger.info(f"Reconciliation over {days} days found no discrepancies")

    return report


def reprocess_event(db: Session, event_id: str, actor: Optional[str] = None) -> Dict:
    """Run the processor again for one event, even if it is PROCESSED"""
    event = event_store.get_event(db, event_id)
    if event is None:
        raise EventNotFoundError(event_id)

    previous_status = event.processing_status
    if previous_status == ProcessingStatus.FAILED:
        event_store.reset_to_pending(db, event)
        db.commit()

    status = process_event(
        db, event_id,
        force=previous_status == ProcessingStatus.PROCESSED,
        actor=actor
    )

    event = event_store.get_event(db, event_id)
    error = event.error if event is not None else None
    audit_service.log_action(
        db, audit_service.EVENT_REPROCESSED, "raw_event", event_id,
        actor=actor,
        before={"processing_status": previous_status},
        after={"processing_status": status, "error": error},
        commit=True
    )

    if status != ProcessingStatus.PROCESSED:
        logger.warning(f"Reprocessing {event_id} did not succeed: {error}")
        raise RepairError(f"Reprocessing event {event_id} failed: {error}")

    logger.info(f"Reprocessed event {event_id} ({previous_status} -> {status})")
    return {"eventId": event_id, "previous_status": previous_status, "status": status}


def rebuild_payment_from_event(db: Session, event_id: str, actor: Optional[str] = None) -> Dict:
    """Create or correct the Payment implied by one event, with no subscription or entitlement effects"""
    event = event_store.get_event(db, event_id)
    if event is None:
        raise EventNotFoundError(event_id)

    status = IMPLIED_PAYMENT_STATUS.get(event.event_type)
    if status is None:
        raise RepairError(f"Event type {event.event_type} does not imply a payment")

    transaction_id = event.transaction_id or event.provider_event_id
    try:
        normalized = decode_payload(event.payload)
        user = resolve_user(db, normalized)
        metadata = {"event_id": event_id, "event_type": event.event_type, "repair": True}
        payment, changed = payment_service.create_or_update_payment(
            db,
            user_id=user.id,
            transaction_id=transaction_id,
            status=status,
            amount_cents=normalized.amount_cents,
            currency=normalized.currency,
            paid_at=(normalized.approved_at or event.received_at) if status == PaymentStatus.PAID else None,
            actor=actor,
            metadata=metadata,
            force_status=True,
            create_action=audit_service.PAYMENT_REBUILT,
            update_action=audit_service.PAYMENT_REBUILT
        )
        if not changed:
            audit_service.log_action(
                db, audit_service.PAYMENT_REBUILT, "payment", payment.id,
                actor=actor, after=payment.to_dict(), metadata={**metadata, "unchanged": True}
            )
        db.commit()
    except PayhookError as e:
        db.rollback()
        raise RepairError(f"Could not rebuild payment from event {event_id}: {e}") from e
    except Exception as e:
        db.rollback()
        logger.error(f"Rebuild of payment from event {event_id} failed: {e}", exc_info=True)
        raise RepairError(f"Could not rebuild payment from event {event_id}: {e}") from e

    db.refresh(payment)
    logger.info(f"Rebuilt payment {transaction_id} from event {event_id} ({status})")
    return {"eventId": event_id, "status": status, "payment": payment.to_dict()}


def get_processing_stats(db: Session, days: int = 7) -> Dict:
    since = days_ago(days)
    counts = dict(
        db.query(RawEvent.processing_status, func.count(RawEvent.id))
        .filter(RawEvent.received_at >= since)
        .group_by(RawEvent.processing_status)
        .all()
    )
    unidentified = db.query(func.count(RawEvent.id)).filter(
        RawEvent.received_at >= since,
        RawEvent.identity_source == IdentitySource.SYNTHESIZED
    ).scalar() or 0

    total = sum(counts.values())
    processed = counts.get(ProcessingStatus.PROCESSED, 0)
    return {
        "window_days": days,
        "total": total,
        "pending": counts.get(ProcessingStatus.PENDING, 0),
        "processed": processed,
        "failed": counts.get(ProcessingStatus.FAILED, 0),
        "unidentified": unidentified,
        "success_rate": round(processed / total * 100, 2) if total else 0.0,
    }


def get_failed_events(db: Session, limit: int = 50) -> List[Dict]:
    return [e.to_dict(include_payload=True) for e in event_store.get_failed_events(db, limit)]
