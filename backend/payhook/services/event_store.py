"""Raw event persistence

RawEvent rows are keyed by provider_event_id; re-delivery of the same event
returns the existing row instead of inserting a second one.
"""
import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from payhook.core.errors import IngestionPersistenceError
from payhook.models.raw_event import ProcessingStatus, RawEvent
from payhook.schemas.webhooks import NormalizedEvent
from payhook.utils.time import utcnow

logger = logging.getLogger(__name__)


def get_event(db: Session, event_id: str) -> Optional[RawEvent]:
    return db.query(RawEvent).filter(RawEvent.provider_event_id == event_id).first()


def is_processed(db: Session, event_id: str) -> bool:
    event = get_event(db, event_id)
    return bool(event and event.processing_status == ProcessingStatus.PROCESSED)


def persist_event(
    db: Session,
    normalized: NormalizedEvent,
    payload: dict,
    headers: Optional[Dict[str, str]] = None
) -> Tuple[RawEvent, bool]:
    """Insert the raw event unless it already exists.

    Returns (event, created). Concurrent deliveries race on the unique
    constraint; the loser rolls back and reads the winner's row.
    """
    existing = get_event(db, normalized.event_id)
    if existing:
        logger.info(f"Duplicate delivery of event {normalized.event_id} ({existing.processing_status})")
        return existing, False

    event = RawEvent(
        provider_event_id=normalized.event_id,
        event_type=normalized.event_type,
        raw_event_type=normalized.raw_event_type,
        transaction_id=normalized.transaction_id,
        identity_source=normalized.identity_source,
        payload=payload,
        headers=headers or {},
        signature=normalized.signature,
        processing_status=ProcessingStatus.PENDING,
        received_at=utcnow()
    )
    try:
        db.add(event)
        db.commit()
        db.refresh(event)
        return event, True
    except IntegrityError:
        db.rollback()
        existing = get_event(db, normalized.event_id)
        if existing:
            logger.info(f"Event {normalized.event_id} inserted concurrently, using existing row")
            return existing, False
        raise IngestionPersistenceError(f"Could not persist event {normalized.event_id}")
    except SQLAlchemyError as e:
        db.rollback()
        raise IngestionPersistenceError(f"Could not persist event {normalized.event_id}: {e}") from e


def get_pending_events(db: Session, limit: int = 100) -> List[RawEvent]:
    """PENDING events, oldest first"""
    return (
        db.query(RawEvent)
        .filter(RawEvent.processing_status == ProcessingStatus.PENDING)
        .order_by(RawEvent.received_at.asc(), RawEvent.id.asc())
        .limit(limit)
        .all()
    )


def get_failed_events(db: Session, limit: int = 50) -> List[RawEvent]:
    """FAILED events, most recent first"""
    return (
        db.query(RawEvent)
        .filter(RawEvent.processing_status == ProcessingStatus.FAILED)
        .order_by(RawEvent.received_at.desc())
        .limit(limit)
        .all()
    )


def mark_processed(db: Session, event: RawEvent) -> None:
    """Stage PROCESSED on the caller's transaction"""
    event.processing_status = ProcessingStatus.PROCESSED
    event.processed_at = utcnow()
    event.error = None


def mark_failed(db: Session, event: RawEvent, error: str) -> None:
    """Stage FAILED with the error text; a PROCESSED event keeps its status"""
    if event.processing_status != ProcessingStatus.PROCESSED:
        event.processing_status = ProcessingStatus.FAILED
    event.error = error[:2000] if error else error


def reset_to_pending(db: Session, event: RawEvent) -> None:
    """FAILED -> PENDING for explicit reprocessing"""
    if event.processing_status == ProcessingStatus.FAILED:
        event.processing_status = ProcessingStatus.PENDING
