"""
Run lock — Redis lease keyed by repository, fenced by a random token.

Keys:
    lock:analysis:{owner}/{project}  → token of the current holder (PX = TTL)

acquire() never blocks: a held, unexpired lease means Busy (None). release()
and renew() only act when the caller's token still matches, so a holder whose
lease expired can neither delete nor extend a newer holder's lease.
"""
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional

import redis

from repopulse.config import ANALYSIS_LOCK_TTL_SECONDS
from repopulse.models.assessment import RepositoryKey
from repopulse.pipeline.errors import LockUnavailableError

logger = logging.getLogger('pipeline.lock')


# Delete only if the caller still owns the key
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

# Extend only if the caller still owns the key
RENEW_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""


@dataclass(frozen=True)
class LockHandle:
    """Proof of an acquired lease. acquired_at/expires_at are epoch seconds."""
    repository: RepositoryKey
    token: str
    acquired_at: float
    expires_at: float


class RunLock:
    """
    Lease-based mutual exclusion over repository keys.

    Usage:
        lock = RunLock(redis_client, ttl_seconds=600)
        handle = lock.acquire(key)
        if handle is None:
            ...  # another run holds it
        try:
            lock.renew(handle) or abort()
        finally:
            lock.release(handle)
    """

    PREFIX = 'lock:analysis'

    def __init__(self, redis_client, ttl_seconds: int = ANALYSIS_LOCK_TTL_SECONDS, clock=None):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time

    def _key(self, repository: RepositoryKey) -> str:
        return f'{self.PREFIX}:{repository.full_name}'

    @property
    def _ttl_ms(self) -> int:
        return int(self.ttl_seconds * 1000)

    def acquire(self, repository: RepositoryKey) -> Optional[LockHandle]:
        """Try once to take the lease. Returns None when another holder has it."""
        token = secrets.token_urlsafe(24)
        now = self._clock()
        try:
            acquired = self.redis.set(self._key(repository), token, nx=True, px=self._ttl_ms)
        except redis.RedisError as e:
            raise LockUnavailableError(f"Lock store unavailable acquiring '{repository}': {e}") from e

        if not acquired:
            logger.info("Lock for '%s' is held by another run", repository)
            return None

        logger.debug("Lock for '%s' acquired (ttl=%ss)", repository, self.ttl_seconds)
        return LockHandle(
            repository=repository,
            token=token,
            acquired_at=now,
            expires_at=now + self.ttl_seconds,
        )

    def handle_for(self, repository: RepositoryKey, token: str) -> LockHandle:
        """Rebuild a handle from a token persisted on a run (resume after restart)."""
        now = self._clock()
        return LockHandle(repository=repository, token=token, acquired_at=now, expires_at=now)

    def renew(self, handle: LockHandle) -> Optional[LockHandle]:
        """
        Extend the lease by a full TTL if `handle` still owns it.

        Returns the refreshed handle, or None when the lease expired or was
        reclaimed — the caller must stop working.
        """
        now = self._clock()
        try:
            renewed = self.redis.eval(RENEW_SCRIPT, 1, self._key(handle.repository), handle.token, self._ttl_ms)
        except redis.RedisError as e:
            raise LockUnavailableError(f"Lock store unavailable renewing '{handle.repository}': {e}") from e

        if not renewed:
            logger.info("Lock for '%s' expired or was reclaimed", handle.repository)
            return None
        return LockHandle(
            repository=handle.repository,
            token=handle.token,
            acquired_at=handle.acquired_at,
            expires_at=now + self.ttl_seconds,
        )

    def release(self, handle: Optional[LockHandle]) -> bool:
        """Drop the lease if still owned. Releasing a lost or released lease is a no-op."""
        if handle is None:
            return False
        try:
            released = self.redis.eval(RELEASE_SCRIPT, 1, self._key(handle.repository), handle.token)
        except redis.RedisError as e:
            # The lease expires on its own; nothing to undo
            logger.warning("Could not release lock for '%s': %s", handle.repository, e)
            return False
        if not released:
            logger.debug("Lock for '%s' already released or reclaimed", handle.repository)
        return bool(released)

    def holder(self, repository: RepositoryKey) -> Optional[str]:
        """Token of the current lease holder, or None if the lease is free."""
        try:
            return self.redis.get(self._key(repository))
        except redis.RedisError as e:
            raise LockUnavailableError(f"Lock store unavailable reading '{repository}': {e}") from e
