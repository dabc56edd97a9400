"""
Shared client instances — Redis connection and the RQ queue.

Lazily initialized on first access so importing this module is always safe
(even when Redis is unreachable during tests).
"""
import logging

import redis

from repopulse.config import REDIS_URL, REDIS_SOCKET_TIMEOUT

logger = logging.getLogger('repopulse.extensions')

_redis_client = None
_queue = None


def get_redis_client():
    """Return the process-wide Redis client, creating it on first use."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=REDIS_SOCKET_TIMEOUT,
        )
        logger.info("Redis client initialized")
    return _redis_client


def get_queue():
    """Return the RQ queue analysis jobs are enqueued on."""
    global _queue
    if _queue is None:
        from rq import Queue
        _queue = Queue('analysis', connection=get_redis_client())
    return _queue
