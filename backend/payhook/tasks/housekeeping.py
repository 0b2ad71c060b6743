"""Daily housekeeping job"""
import logging
from typing import Dict

from sqlalchemy.orm import Session

from payhook.services.entitlement_service import expire_entitlements

logger = logging.getLogger(__name__)

ACTOR = "job:housekeeping"


def run_housekeeping(db: Session, now=None) -> Dict[str, int]:
    """Expire entitlements past their expiry date"""
    try:
        expired = expire_entitlements(db, now=now, actor=ACTOR)
        db.commit()
    except Exception:
        db.rollback()
        raise
    if expired:
        logger.info(f"Housekeeping expired {expired} entitlement(s)")
    return {"entitlements_expired": expired}
