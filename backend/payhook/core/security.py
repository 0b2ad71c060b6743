"""Security dependencies for the admin surface"""
import json
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from payhook.core.config import settings
from payhook.core.logging import api_access_logger, security_logger
from payhook.db.redis import get_session
from payhook.db.session import get_db
from payhook.models.user import User


def require_auth(request: Request) -> int:
    """Dependency: Require authentication, return user_id"""
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = get_session(session_id)
    if not user_id:
        raise HTTPException(401, "Session expired. Please log in again.")

    return user_id


def require_permission(permission: str):
    """Dependency factory: require an admin user holding a permission claim"""

    def dependency(
        request: Request,
        user_id: int = Depends(require_auth),
        db: Session = Depends(get_db)
    ) -> User:
        user = db.query(User).filter(User.id == user_id).first()
        if not user or not user.is_admin:
            security_logger.warning(f"Admin access denied - User: {user_id}, Path: {request.url.path}")
            raise HTTPException(403, "Admin access required")
        if permission not in (user.admin_permissions or []):
            security_logger.warning(
                f"Permission '{permission}' missing - User: {user_id}, Path: {request.url.path}"
            )
            raise HTTPException(403, f"Permission '{permission}' required")
        return user

    return dependency


require_finance_admin = require_permission(settings.FINANCE_PERMISSION)


def log_api_access(
    request: Request,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log detailed API access information"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "query": str(request.url.query) if request.url.query else None,
        "client_ip": client_ip,
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
