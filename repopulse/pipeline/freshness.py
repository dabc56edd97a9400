"""
Freshness policy — when can an earlier assessment be reused, and how long
may a cached read model be served.

Two separate questions live here:
  - is_fresh() decides whether a new analysis run is needed at all.
  - CacheLife governs read-through caches only (project view, recent list).
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from repopulse.config import ANALYSIS_FRESHNESS_SECONDS

logger = logging.getLogger('pipeline.freshness')

# Cache bands returned by CacheLife.band()
FRESH = 'fresh'
STALE = 'stale'
REVALIDATE = 'revalidate'
EXPIRED = 'expired'


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_fresh(run, now: Optional[datetime] = None, window_seconds: int = ANALYSIS_FRESHNESS_SECONDS) -> bool:
    """
    True if `run` is recent enough that no new analysis is needed.

    The reference timestamp is completed_at, falling back to started_at.
    Missing run, missing timestamps or anything unreadable count as stale.
    """
    if run is None:
        return False
    try:
        timestamp = getattr(run, 'completed_at', None) or getattr(run, 'started_at', None)
        if timestamp is None:
            return False
        now = now or datetime.now(timezone.utc)
        age = (_as_utc(now) - _as_utc(timestamp)).total_seconds()
        return age < window_seconds
    except (TypeError, ValueError, AttributeError, OverflowError):
        logger.debug("Unreadable run timestamps, treating as stale", exc_info=True)
        return False


@dataclass(frozen=True)
class CacheLife:
    """
    Read-side cache lifetime in seconds, ordered stale <= revalidate <= expire.

    Bands by entry age:
      [0, stale)            fresh — serve as is
      [stale, revalidate)   stale — serve, schedule a background refresh
      [revalidate, expire)  revalidate — reload now, serve the old value only if reload fails
      [expire, ...)         expired — never served
    """
    stale: int
    revalidate: int
    expire: int

    def __post_init__(self):
        if self.stale < 0:
            raise ValueError("stale must not be negative")
        if not (self.stale <= self.revalidate <= self.expire):
            raise ValueError(
                f"cache bands must satisfy stale <= revalidate <= expire, got "
                f"{self.stale}/{self.revalidate}/{self.expire}"
            )

    @classmethod
    def for_analysis(cls, window_seconds: int = ANALYSIS_FRESHNESS_SECONDS,
                     stale: int = 300, grace: int = 3600) -> 'CacheLife':
        return cls(stale=stale, revalidate=window_seconds, expire=window_seconds + grace)

    def band(self, age_seconds: float) -> str:
        if age_seconds < self.stale:
            return FRESH
        if age_seconds < self.revalidate:
            return STALE
        if age_seconds < self.expire:
            return REVALIDATE
        return EXPIRED


ANALYSIS_CACHE_LIFE = CacheLife.for_analysis()
HOMEPAGE_CACHE_LIFE = CacheLife(stale=60, revalidate=300, expire=3600)
