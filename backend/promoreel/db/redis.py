"""Redis clients for session lookup and the task queue"""
import asyncio
import logging
from typing import Optional

import redis
import redis.asyncio as aioredis

from promoreel.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None
_async_client = None


def get_redis_client():
    """Get or create the sync Redis client

    Created on first use so tests can patch it before any connection is made.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def get_async_redis_client():
    """Get or create the async Redis client bound to the running event loop

    Returns None when called outside of a running loop.
    """
    global _async_client

    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None

    if _async_client is not None:
        client_loop = getattr(_async_client.connection_pool, '_loop', None)
        if client_loop is not current_loop:
            # Client belongs to a loop that no longer runs (worker restart, tests)
            _async_client = None

    if _async_client is None:
        _async_client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            max_connections=20
        )
        _async_client.connection_pool._loop = current_loop

    return _async_client


def get_session(session_id: str) -> Optional[int]:
    """Resolve a session id to its user id"""
    user_id = get_redis_client().get(f"session:{session_id}")
    return int(user_id) if user_id else None
