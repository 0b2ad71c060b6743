"""Redis client for admin session lookup

Sessions are issued by the account service; this subsystem only resolves them.
"""
import logging
from typing import Optional

import redis

from payhook.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def set_redis_client(client) -> None:
    """Replace the shared client (tests inject fakeredis here)"""
    global _client
    _client = client


def ping() -> bool:
    return bool(get_redis_client().ping())


def get_session(session_id: str) -> Optional[int]:
    """Get user_id from session"""
    key = f"session:{session_id}"
    user_id = get_redis_client().get(key)
    return int(user_id) if user_id else None
