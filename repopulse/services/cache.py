"""
Redis-backed read-through cache with tag invalidation.

Keys:
    cache:{name}        → JSON {"value": ..., "stored_at": epoch seconds}
    cachetag:{tag}      → set of cache keys registered under the tag
    cacherefresh:{name} → marker held while a stale refresh is queued

Every entry carries a Redis TTL equal to its CacheLife.expire, so a missed
invalidation heals on its own. All cache I/O is best-effort: a Redis failure
degrades to calling the loader, never to failing the read.
"""
import json
import logging
import time
from typing import Any, Callable, Iterable, Optional

from repopulse.models.assessment import RepositoryKey
from repopulse.pipeline.base import CacheGateway
from repopulse.pipeline.freshness import (
    ANALYSIS_CACHE_LIFE, CacheLife, FRESH, STALE, REVALIDATE,
)

logger = logging.getLogger('services.cache')

RECENT_ANALYSES_TAG = 'recent-analyses'

CACHE_PREFIX = 'cache'
TAG_PREFIX = 'cachetag'
REFRESH_PREFIX = 'cacherefresh'


def project_tag(repository: RepositoryKey) -> str:
    return f'project:{repository.full_name}'


def _cache_key(name: str) -> str:
    return f'{CACHE_PREFIX}:{name}'


def _tag_key(tag: str) -> str:
    return f'{TAG_PREFIX}:{tag}'


def _refresh_key(name: str) -> str:
    return f'{REFRESH_PREFIX}:{name}'


class RedisCacheGateway(CacheGateway):
    """Drops every cache entry registered under the given tags. Idempotent."""

    def __init__(self, redis_client):
        self.redis = redis_client

    def invalidate(self, tags: Iterable[str]) -> None:
        tags = sorted(set(tags))
        if not tags:
            return
        pipe = self.redis.pipeline()
        for tag in tags:
            keys = self.redis.smembers(_tag_key(tag))
            if keys:
                pipe.delete(*keys)
            pipe.delete(_tag_key(tag))
        pipe.execute()
        logger.info("Invalidated cache tags: %s", ', '.join(tags))


class ReadThroughCache:
    """
    Serve loader results from Redis according to a CacheLife.

    Usage:
        cache = ReadThroughCache(redis_client, CacheLife(60, 300, 3600))
        value = cache.get_or_load('recent:20', load_recent, tags=['recent-analyses'])
    """

    def __init__(self, redis_client, cache_life: CacheLife = ANALYSIS_CACHE_LIFE, clock=None):
        self.redis = redis_client
        self.cache_life = cache_life
        self._clock = clock or time.time

    def get_or_load(self, name: str, loader: Callable[[], Any], tags: Iterable[str] = (),
                    on_stale: Optional[Callable[[], None]] = None) -> Any:
        entry = self._read(name)
        if entry is not None:
            age = self._clock() - entry['stored_at']
            band = self.cache_life.band(age)
            if band == FRESH:
                return entry['value']
            if band == STALE:
                if on_stale is not None:
                    self._schedule_refresh(name, on_stale)
                return entry['value']
            if band == REVALIDATE:
                try:
                    value = loader()
                except Exception:
                    logger.warning("Reload of '%s' failed, serving previous value", name, exc_info=True)
                    return entry['value']
                self.put(name, value, tags)
                return value

        value = loader()
        self.put(name, value, tags)
        return value

    def put(self, name: str, value: Any, tags: Iterable[str] = ()) -> None:
        key = _cache_key(name)
        payload = json.dumps({'value': value, 'stored_at': self._clock()})
        try:
            pipe = self.redis.pipeline()
            pipe.setex(key, int(self.cache_life.expire) or 1, payload)
            for tag in tags:
                pipe.sadd(_tag_key(tag), key)
                pipe.expire(_tag_key(tag), int(self.cache_life.expire) or 1)
            pipe.execute()
        except Exception:
            logger.warning("Could not write cache entry '%s'", name, exc_info=True)

    def _read(self, name: str) -> Optional[dict]:
        try:
            raw = self.redis.get(_cache_key(name))
        except Exception:
            logger.warning("Could not read cache entry '%s'", name, exc_info=True)
            return None
        if not raw:
            return None
        try:
            entry = json.loads(raw)
            float(entry['stored_at'])
            return entry
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed cache entry '%s'", name)
            return None

    def _schedule_refresh(self, name: str, on_stale: Callable[[], None]) -> None:
        """Call on_stale at most once per stale period for an entry."""
        marker = _refresh_key(name)
        try:
            if not self.redis.set(marker, '1', nx=True, ex=int(self.cache_life.stale) or 1):
                return
        except Exception:
            logger.warning("Could not claim refresh of '%s'", name, exc_info=True)
            return
        try:
            on_stale()
        except Exception:
            logger.warning("Could not schedule refresh of '%s'", name, exc_info=True)
            try:
                self.redis.delete(marker)
            except Exception:
                logger.warning("Could not release refresh marker of '%s'", name, exc_info=True)
