"""Finance admin API routes"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from payhook.core.config import settings
from payhook.core.errors import EventNotFoundError, RepairError
from payhook.core.security import require_finance_admin
from payhook.db.session import get_db
from payhook.models.user import User
from payhook.schemas.admin import DiscrepancyReport, FinanceSummary, Page, ProcessingStats, RepairResult
from payhook.services import audit_service, payment_service, reconciliation_service

router = APIRouter(prefix="/api/admin/finance", tags=["finance"])
logger = logging.getLogger(__name__)


def _actor(user: User) -> str:
    return f"admin:{user.id}"


@router.get("/summary", response_model=FinanceSummary)
def get_summary(admin_user: User = Depends(require_finance_admin), db: Session = Depends(get_db)):
    """Payment totals and event backlog"""
    return payment_service.get_payments_summary(db)


@router.get("/payments", response_model=Page)
def list_payments(
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    admin_user: User = Depends(require_finance_admin),
    db: Session = Depends(get_db)
):
    payments, total = payment_service.list_payments(db, status=status, user_id=user_id, page=page, page_size=page_size)
    return {"items": [p.to_dict() for p in payments], "total": total, "page": page, "page_size": page_size}


@router.get("/events", response_model=Page)
def list_events(
    status: Optional[str] = None,
    event_type: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    admin_user: User = Depends(require_finance_admin),
    db: Session = Depends(get_db)
):
    events, total = payment_service.list_raw_events(
        db, status=status.upper() if status else None, event_type=event_type, page=page, page_size=page_size
    )
    return {"items": [e.to_dict() for e in events], "total": total, "page": page, "page_size": page_size}


@router.get("/discrepancies", response_model=DiscrepancyReport)
def get_discrepancies(
    days: int = Query(settings.RECONCILIATION_WINDOW_DAYS, ge=1, le=90),
    admin_user: User = Depends(require_finance_admin),
    db: Session = Depends(get_db)
):
    """Run reconciliation over the last N days"""
    return reconciliation_service.find_discrepancies(db, days, actor=_actor(admin_user))


@router.post("/reprocess-event/{event_id}", response_model=RepairResult)
def reprocess_event(
    event_id: str,
    admin_user: User = Depends(require_finance_admin),
    db: Session = Depends(get_db)
):
    try:
        result = reconciliation_service.reprocess_event(db, event_id, actor=_actor(admin_user))
    except EventNotFoundError as e:
        raise HTTPException(404, str(e))
    except RepairError as e:
        raise HTTPException(500, str(e))
    logger.info(f"Admin {admin_user.id} reprocessed event {event_id}")
    return {"success": True, "message": "Event reprocessed", **result}


@router.post("/rebuild-payment/{event_id}", response_model=RepairResult)
def rebuild_payment(
    event_id: str,
    admin_user: User = Depends(require_finance_admin),
    db: Session = Depends(get_db)
):
    try:
        result = reconciliation_service.rebuild_payment_from_event(db, event_id, actor=_actor(admin_user))
    except EventNotFoundError as e:
        raise HTTPException(404, str(e))
    except RepairError as e:
        raise HTTPException(500, str(e))
    logger.info(f"Admin {admin_user.id} rebuilt payment from event {event_id}")
    return {"success": True, "message": "Payment rebuilt", **result}


@router.get("/failed-events")
def get_failed_events(
    limit: int = Query(50, ge=1, le=500),
    admin_user: User = Depends(require_finance_admin),
    db: Session = Depends(get_db)
):
    events = reconciliation_service.get_failed_events(db, limit)
    return {"events": events, "count": len(events)}


@router.get("/processing-stats", response_model=ProcessingStats)
def get_processing_stats(
    days: int = Query(7, ge=1, le=90),
    admin_user: User = Depends(require_finance_admin),
    db: Session = Depends(get_db)
):
    return reconciliation_service.get_processing_stats(db, days)


@router.get("/audit-logs", response_model=Page)
def get_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor: Optional[str] = None,
    action: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    admin_user: User = Depends(require_finance_admin),
    db: Session = Depends(get_db)
):
    logs, total = audit_service.get_audit_logs(
        db, entity_type=entity_type, entity_id=entity_id, actor=actor, action=action,
        start=start, end=end, page=page, page_size=page_size
    )
    return {"items": [log.to_dict() for log in logs], "total": total, "page": page, "page_size": page_size}
