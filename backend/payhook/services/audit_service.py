"""Audit trail for state-changing actions

log_action() is best-effort: it never raises. Failures are logged and counted
so a broken audit path is visible without blocking billing.
"""
import json
from datetime import datetime
from typing import Any, List, Optional, Tuple

from sqlalchemy.orm import Session

from payhook.core.logging import audit_logger
from payhook.core.metrics import audit_write_failures_counter
from payhook.models.audit_log import AuditLog

logger = audit_logger

# Action tags
WEBHOOK_RECEIVED = "WEBHOOK_RECEIVED"
WEBHOOK_PROCESSED = "WEBHOOK_PROCESSED"
WEBHOOK_FAILED = "WEBHOOK_FAILED"
PAYMENT_CREATED = "PAYMENT_CREATED"
PAYMENT_UPDATED = "PAYMENT_UPDATED"
PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
PAYMENT_CHARGEBACK = "PAYMENT_CHARGEBACK"
PAYMENT_REBUILT = "PAYMENT_REBUILT"
SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
SUBSCRIPTION_STATUS_CHANGED = "SUBSCRIPTION_STATUS_CHANGED"
SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
ENTITLEMENT_CREATED = "ENTITLEMENT_CREATED"
ENTITLEMENT_REVOKED = "ENTITLEMENT_REVOKED"
ENTITLEMENT_EXPIRED = "ENTITLEMENT_EXPIRED"
EVENT_REPROCESSED = "EVENT_REPROCESSED"
RECONCILIATION_RUN = "RECONCILIATION_RUN"
RECONCILIATION_DISCREPANCY = "RECONCILIATION_DISCREPANCY"
JOB_EXECUTED = "JOB_EXECUTED"
JOB_FAILED = "JOB_FAILED"

SYSTEM_ACTOR = "system"


def _to_json(value: Any) -> Any:
    """Round-trip through json so the JSON column never sees Decimals or datetimes"""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def log_action(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: Any,
    actor: Optional[str] = None,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
    metadata: Optional[dict] = None,
    commit: bool = False
) -> Optional[AuditLog]:
    """Record an audit entry.

    With commit=False the entry joins the caller's transaction and is written
    (or rolled back) with it. With commit=True it is committed on its own; only
    use that on a session with no other pending work.
    """
    try:
        entry = AuditLog(
            actor=actor or SYSTEM_ACTOR,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            before=_to_json(before),
            after=_to_json(after),
            audit_metadata=_to_json(metadata)
        )
        # Savepoint: a failed insert rolls back only the audit row
        with db.begin_nested():
            db.add(entry)
            db.flush()
        if commit:
            db.commit()
        return entry
    except Exception as e:
        audit_write_failures_counter.inc()
        logger.error(f"Failed to write audit log {action} for {entity_type}:{entity_id}: {e}")
        if commit:
            try:
                db.rollback()
            except Exception as rollback_error:
                logger.error(f"Rollback after audit failure also failed: {rollback_error}")
        return None


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor: Optional[str] = None,
    action: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    page_size: int = 50
) -> Tuple[List[AuditLog], int]:
    """Filtered, newest-first page of audit entries and the total match count"""
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == str(entity_id))
    if actor:
        query = query.filter(AuditLog.actor == actor)
    if action:
        query = query.filter(AuditLog.action == action)
    if start:
        query = query.filter(AuditLog.created_at >= start)
    if end:
        query = query.filter(AuditLog.created_at <= end)

    total = query.count()
    items = (
        query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total
