"""
Centralized configuration — env vars, analysis tunables, status vocabularies.
"""
import os
from dataclasses import dataclass
from typing import Optional


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, default))


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, default))


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis ─────────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
REDIS_SOCKET_TIMEOUT = _float_env('REDIS_SOCKET_TIMEOUT', 5.0)

# ── PostgreSQL ────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')

# ── GitHub ────────────────────────────────────────────────────────────────────
GITHUB_TOKEN = os.getenv('GITHUB_TOKEN')
GITHUB_API_URL = os.getenv('GITHUB_API_URL', 'https://api.github.com')
GITHUB_TIMEOUT_SECONDS = _float_env('GITHUB_TIMEOUT_SECONDS', 30.0)
# Recent issues fetched per repository for resolution times
RECENT_ISSUE_SAMPLE_SIZE = 100

# ── Auth ─────────────────────────────────────────────────────────────────────
SWEEP_TOKEN = os.getenv('SWEEP_TOKEN')

# ── Analysis tunables ────────────────────────────────────────────────────────
ANALYSIS_FRESHNESS_SECONDS = 60 * 60 * 24 * 7
ANALYSIS_LOCK_TTL_SECONDS = 60 * 10
ANALYSIS_RETRY_ATTEMPTS = 3
ANALYSIS_RETRY_BASE_DELAY = 2.0
ANALYSIS_RETRY_MAX_DELAY = 30.0
CACHE_STALE_SECONDS = 300
CACHE_EXPIRE_GRACE_SECONDS = 3600
STALL_AFTER_SECONDS = 120

# ── Run status values ─────────────────────────────────────────────────────────
RUN_STATUSES = [
    'pending',
    'running',
    'succeeded',
    'failed',
]
ACTIVE_RUN_STATUSES = ('pending', 'running')
TERMINAL_RUN_STATUSES = ('succeeded', 'failed')

# ── Workflow steps (persisted so a run can resume) ───────────────────────────
RUN_STEPS = [
    'lock_acquired',
    'metrics_fetched',
    'classified',
    'persisted',
    'cache_invalidated',
]

# ── Failure reason codes ─────────────────────────────────────────────────────
REASON_METRICS_UNAVAILABLE = 'metrics-unavailable'
REASON_LOCK_LOST = 'lock-lost'
REASON_STORE_CONFLICT = 'store-conflict'
REASON_DISPATCH_FAILED = 'dispatch-failed'
REASON_NOT_FOUND = 'not-found'

TRIGGER_SOURCES = ('api', 'scheduled', 'system')


@dataclass(frozen=True)
class AnalysisConfig:
    """
    Tunables for one orchestrator / cache-layer instance.

    Passed in at construction so tests can run several configurations side
    by side. Cache bands default to (stale, freshness window, window + grace).
    """
    freshness_window_seconds: int = ANALYSIS_FRESHNESS_SECONDS
    lock_ttl_seconds: int = ANALYSIS_LOCK_TTL_SECONDS
    retry_attempts: int = ANALYSIS_RETRY_ATTEMPTS
    retry_base_delay: float = ANALYSIS_RETRY_BASE_DELAY
    retry_max_delay: float = ANALYSIS_RETRY_MAX_DELAY
    cache_stale_seconds: int = CACHE_STALE_SECONDS
    cache_revalidate_seconds: Optional[int] = None
    cache_expire_seconds: Optional[int] = None
    stall_after_seconds: int = STALL_AFTER_SECONDS

    def __post_init__(self):
        for name in ('freshness_window_seconds', 'lock_ttl_seconds', 'retry_attempts'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise ValueError("retry delays must not be negative")
        if self.stall_after_seconds < 0:
            raise ValueError("stall_after_seconds must not be negative")
        # Raises ValueError when the bands are out of order
        self.cache_life

    @property
    def cache_life(self):
        from repopulse.pipeline.freshness import CacheLife
        revalidate = self.cache_revalidate_seconds
        if revalidate is None:
            revalidate = self.freshness_window_seconds
        expire = self.cache_expire_seconds
        if expire is None:
            expire = revalidate + CACHE_EXPIRE_GRACE_SECONDS
        return CacheLife(stale=self.cache_stale_seconds, revalidate=revalidate, expire=expire)

    @classmethod
    def from_env(cls) -> 'AnalysisConfig':
        """Build a config from ANALYSIS_* / CACHE_* environment variables."""
        revalidate = os.getenv('CACHE_REVALIDATE_SECONDS')
        expire = os.getenv('CACHE_EXPIRE_SECONDS')
        return cls(
            freshness_window_seconds=_int_env('ANALYSIS_FRESHNESS_SECONDS', ANALYSIS_FRESHNESS_SECONDS),
            lock_ttl_seconds=_int_env('ANALYSIS_LOCK_TTL_SECONDS', ANALYSIS_LOCK_TTL_SECONDS),
            retry_attempts=_int_env('ANALYSIS_RETRY_ATTEMPTS', ANALYSIS_RETRY_ATTEMPTS),
            retry_base_delay=_float_env('ANALYSIS_RETRY_BASE_DELAY', ANALYSIS_RETRY_BASE_DELAY),
            retry_max_delay=_float_env('ANALYSIS_RETRY_MAX_DELAY', ANALYSIS_RETRY_MAX_DELAY),
            cache_stale_seconds=_int_env('CACHE_STALE_SECONDS', CACHE_STALE_SECONDS),
            cache_revalidate_seconds=int(revalidate) if revalidate else None,
            cache_expire_seconds=int(expire) if expire else None,
            stall_after_seconds=_int_env('STALL_AFTER_SECONDS', STALL_AFTER_SECONDS),
        )
