"""Redis client for reading login sessions

Sessions are written by the identity service; this service only resolves
``session:<id>`` to a user id.
"""
import redis
import logging
from typing import Optional
from paygate.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)"""
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def get_session(session_id: str) -> Optional[str]:
    """Get user_id from session"""
    user_id = get_redis_client().get(f"session:{session_id}")
    if not user_id:
        logger.debug(f"No session found for {session_id[:8]}...")
        return None
    return user_id
