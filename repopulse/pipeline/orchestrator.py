"""
Analysis Orchestrator — request_analysis() entry point and the run workflow.

A run moves through:
  IDLE → LOCK_ACQUIRED → METRICS_FETCHED → CLASSIFIED → PERSISTED → CACHE_INVALIDATED
and may drop to FAILED from any state. request_analysis() takes the lease and
creates the run; run() executes the remaining steps in a worker (enqueued via
RQ) and records the reached step on the run after each one, so re-invoking
run() with the same id after a crash continues where the last worker stopped.

Exclusivity is enforced by the RunLock lease alone. Before every write the
worker renews its lease; a worker whose lease lapsed aborts with lock-lost
instead of overwriting a newer run.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from repopulse.config import (
    AnalysisConfig,
    REASON_DISPATCH_FAILED, REASON_LOCK_LOST, REASON_METRICS_UNAVAILABLE,
    REASON_NOT_FOUND, REASON_STORE_CONFLICT, TRIGGER_SOURCES,
)
from repopulse.models.analysis_run import AnalysisRun
from repopulse.models.assessment import AssessmentResult, MetricsPayload, RepositoryKey
from repopulse.pipeline.base import CacheGateway, MetricsProvider, RunStore
from repopulse.pipeline.classifier import classify
from repopulse.pipeline.errors import (
    LockLost, LockUnavailableError, ProviderError, StoreConflict,
)
from repopulse.pipeline.freshness import is_fresh
from repopulse.pipeline.lock import LockHandle, RunLock
from repopulse.services.cache import RECENT_ANALYSES_TAG, project_tag

logger = logging.getLogger('pipeline.orchestrator')

# ── Workflow states ──────────────────────────────────────────────────────────
IDLE = 'idle'
LOCK_ACQUIRED = 'lock_acquired'
METRICS_FETCHED = 'metrics_fetched'
CLASSIFIED = 'classified'
PERSISTED = 'persisted'
CACHE_INVALIDATED = 'cache_invalidated'
FAILED = 'failed'

# ── request_analysis() outcomes ──────────────────────────────────────────────
STARTED = 'started'
IN_PROGRESS = 'in_progress'
FRESH_RESULT = 'fresh'

_MAX_ERROR_MESSAGE = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


@dataclass(frozen=True)
class RunHandle:
    """What a caller gets back from request_analysis()."""
    repository: RepositoryKey
    run_id: Optional[str]
    status: Optional[str]
    outcome: str

    @property
    def created(self) -> bool:
        return self.outcome == STARTED

    def to_dict(self) -> Dict:
        return {
            'repository': {
                'owner': self.repository.owner,
                'project': self.repository.project,
                'full_name': self.repository.full_name,
            },
            'run_id': self.run_id,
            'status': self.status,
            'outcome': self.outcome,
        }


@dataclass(frozen=True)
class RunOutcome:
    """Where run() stopped. `reason` is a failure code when state is FAILED."""
    run_id: str
    state: str
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == CACHE_INVALIDATED

    def to_dict(self) -> Dict:
        return {'run_id': self.run_id, 'state': self.state, 'reason': self.reason}


class AnalysisOrchestrator:
    """
    Wires the freshness policy, run lock, metrics provider, classifier,
    run store and cache gateway into the analysis workflow.

    `dispatch(run_id)` hands a created run to a worker (RQ by default);
    `clock` and `sleep` are injectable for tests.
    """

    def __init__(
        self,
        store: RunStore,
        lock: RunLock,
        provider: MetricsProvider,
        cache: CacheGateway,
        config: Optional[AnalysisConfig] = None,
        dispatch: Optional[Callable[[str], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.store = store
        self.lock = lock
        self.provider = provider
        self.cache = cache
        self.config = config or AnalysisConfig()
        self._dispatch = dispatch or self._enqueue
        self._clock = clock or _utcnow
        self._sleep = sleep or time.sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based): base * 2^(n-1), capped."""
        delay = self.config.retry_base_delay * (2 ** (attempt - 1))
        return min(self.config.retry_max_delay, delay)

    # ── Entry point ──────────────────────────────────────────────────────

    def request_analysis(self, owner: str, project: str, force: bool = False,
                         trigger_source: str = 'api') -> RunHandle:
        """
        Start an analysis for owner/project unless a usable one exists.

        Returns a RunHandle whose outcome is:
          - 'fresh'        the latest run succeeded inside the freshness window
          - 'in_progress'  another run holds the lock; run_id points at it when known
          - 'started'      a new run was created and dispatched

        Raises:
            ValueError: owner/project are not valid repository names.
            LockUnavailableError: the lock store is down; retry later.
        """
        repository = RepositoryKey.from_parts(owner, project)
        if trigger_source not in TRIGGER_SOURCES:
            raise ValueError(f"Unknown trigger source: {trigger_source}")

        if not force:
            latest = self.store.get_latest_run(repository)
            if (latest is not None and latest.status == 'succeeded'
                    and is_fresh(latest, self._clock(), self.config.freshness_window_seconds)):
                logger.debug("Reusing fresh run %s for '%s'", latest.id, repository)
                return RunHandle(repository, latest.id, latest.status, FRESH_RESULT)

        handle = self.lock.acquire(repository)
        if handle is None:
            in_flight = self.store.get_latest_run(repository)
            if in_flight is not None and in_flight.is_active:
                logger.info("Analysis for '%s' already in progress (run %s)", repository, in_flight.id)
                return RunHandle(repository, in_flight.id, in_flight.status, IN_PROGRESS)
            logger.info("Analysis for '%s' already in progress", repository)
            return RunHandle(repository, None, None, IN_PROGRESS)

        try:
            run = self.store.create_run(repository, handle.token, trigger_source=trigger_source, now=self._clock())
        except Exception:
            self.lock.release(handle)
            raise

        try:
            self._dispatch(run.id)
        except Exception as e:
            logger.error("Could not dispatch run %s for '%s': %s", run.id, repository, e, exc_info=True)
            self._record_failure(run, handle.token, REASON_DISPATCH_FAILED, f"Dispatch failed: {e}")
            self.lock.release(handle)
            return RunHandle(repository, run.id, 'failed', STARTED)

        logger.info("Started analysis run %s for '%s' (trigger=%s)", run.id, repository, trigger_source,
                    extra={'run_id': run.id, 'repository': repository.full_name})
        return RunHandle(repository, run.id, run.status, STARTED)

    # ── Workflow ─────────────────────────────────────────────────────────

    def run(self, run_id: str) -> RunOutcome:
        """
        Execute (or resume) the workflow for a created run.

        Terminal outcomes release the lease. A lock-store outage or an
        unexpected error propagates with the lease still held, so the job
        runner's retry can resume the run.
        """
        run = self.store.get_run(run_id)
        if run is None:
            logger.error("Run %s not found", run_id)
            return RunOutcome(run_id, FAILED, REASON_NOT_FOUND)

        ctx = {'run_id': run.id, 'repository': run.repository.full_name}

        if run.status == 'succeeded':
            # Crashed after persisting — only the invalidation tail is left
            self._invalidate_caches(run)
            return RunOutcome(run.id, CACHE_INVALIDATED)
        if run.status == 'failed':
            return RunOutcome(run.id, FAILED, run.error_code)

        handle = self.lock.handle_for(run.repository, run.lock_token or '')
        state = LOCK_ACQUIRED
        release = True
        try:
            handle = self._require_lease(handle, run)
            if run.status == 'pending':
                run = self.store.update_run(run.id, handle.token, {'status': 'running', 'step': LOCK_ACQUIRED})
            logger.info("Run %s resuming at step '%s'", run.id, run.step or LOCK_ACQUIRED, extra=ctx)

            metrics = run.metrics if run.step in (METRICS_FETCHED, CLASSIFIED) else None
            if metrics is None:
                metrics, handle, attempts = self._fetch_metrics(run, handle)
                handle = self._require_lease(handle, run)
                run = self.store.update_run(run.id, handle.token, {
                    'step': METRICS_FETCHED,
                    'metrics': metrics,
                    'attempt_count': attempts,
                })
            state = METRICS_FETCHED

            result = classify(metrics)
            handle = self._require_lease(handle, run)
            run = self.store.update_run(run.id, handle.token, {
                'step': CLASSIFIED,
                'category': result.category,
                'score': result.score,
                'breakdown': result.breakdown,
            })
            state = CLASSIFIED

            run = self.persist_result(run, handle, metrics, result)
            state = PERSISTED
            logger.info("Run %s succeeded: %s (score=%.4f)", run.id, result.category.value, result.score, extra=ctx)

            self._invalidate_caches(run)
            state = CACHE_INVALIDATED
            return RunOutcome(run.id, state)

        except LockLost:
            logger.info("Run %s lost its lease after '%s', aborting", run.id, state, extra=ctx)
            self._record_failure(run, handle.token, REASON_LOCK_LOST,
                                 "Lease expired or was reclaimed by a newer run")
            return RunOutcome(run.id, FAILED, REASON_LOCK_LOST)

        except ProviderError as e:
            logger.warning("Run %s could not fetch metrics: %s", run.id, e, extra=ctx)
            self._record_failure(run, handle.token, REASON_METRICS_UNAVAILABLE, str(e))
            return RunOutcome(run.id, FAILED, REASON_METRICS_UNAVAILABLE)

        except StoreConflict as e:
            current = self.store.get_run(run.id)
            if current is not None and current.status == 'succeeded':
                self._invalidate_caches(current)
                return RunOutcome(run.id, CACHE_INVALIDATED)
            logger.warning("Run %s hit a store conflict after '%s': %s", run.id, state, e, extra=ctx)
            return RunOutcome(run.id, FAILED, REASON_STORE_CONFLICT)

        except LockUnavailableError:
            release = False
            logger.warning("Lock store unavailable during run %s, leaving it for retry", run.id, extra=ctx)
            raise

        except Exception:
            release = False
            logger.error("Run %s failed unexpectedly after '%s'", run.id, state, exc_info=True, extra=ctx)
            raise

        finally:
            if release:
                self.lock.release(handle)

    def persist_result(self, run: AnalysisRun, handle: LockHandle,
                       metrics: MetricsPayload, result: AssessmentResult) -> AnalysisRun:
        """
        Write the assessment and mark the run succeeded.

        Idempotent per run id: persisting an already-succeeded run returns the
        stored row unchanged. Refuses to write once the lease is gone.

        Raises:
            LockLost: the lease expired or belongs to a newer run.
            StoreConflict: the run changed under us and did not succeed.
        """
        current = self.store.get_run(run.id) or run
        if current.status == 'succeeded':
            logger.info("Run %s already persisted", run.id)
            return current

        handle = self._require_lease(handle, current)
        try:
            return self.store.update_run(run.id, handle.token, {
                'status': 'succeeded',
                'step': PERSISTED,
                'completed_at': self._clock(),
                'metrics': metrics,
                'category': result.category,
                'score': result.score,
                'breakdown': result.breakdown,
            })
        except StoreConflict:
            current = self.store.get_run(run.id)
            if current is not None and current.status == 'succeeded':
                return current
            raise

    # ── Maintenance ──────────────────────────────────────────────────────

    def sweep_stalled_runs(self, limit: int = 10) -> Dict[str, int]:
        """
        Clean up runs a crashed worker or lost dispatch left behind.

        Active runs whose lease lapsed are failed with lock-lost. Pending runs
        that still hold their lease but were never picked up are re-dispatched.
        """
        now = self._clock()
        counts = {'failed': 0, 'redispatched': 0}
        for run in self.store.list_active_runs(limit):
            holder = self.lock.holder(run.repository)
            if holder is None or holder != run.lock_token:
                self._record_failure(run, run.lock_token or '', REASON_LOCK_LOST,
                                     "Lease expired before the run finished")
                counts['failed'] += 1
                continue

            last_seen = _as_utc(run.updated_at or run.started_at)
            if run.status == 'pending' and (now - last_seen).total_seconds() >= self.config.stall_after_seconds:
                try:
                    self._dispatch(run.id)
                    counts['redispatched'] += 1
                except Exception:
                    logger.warning("Could not re-dispatch run %s", run.id, exc_info=True)

        if counts['failed'] or counts['redispatched']:
            logger.info("Sweep: %d stalled runs failed, %d re-dispatched",
                        counts['failed'], counts['redispatched'])
        return counts

    def refresh_stale_repositories(self, limit: int = 50) -> List[RunHandle]:
        """Scheduled re-check: request analysis for repositories with no recent run."""
        now = self._clock()
        handles = []
        for latest in self.store.list_latest_runs(limit):
            if latest.is_active or is_fresh(latest, now, self.config.freshness_window_seconds):
                continue
            try:
                handles.append(self.request_analysis(
                    latest.repository.owner, latest.repository.project, trigger_source='scheduled',
                ))
            except LockUnavailableError:
                logger.warning("Lock store unavailable, stopping scheduled refresh early")
                break
        return handles

    # ── Step helpers ─────────────────────────────────────────────────────

    def _require_lease(self, handle: LockHandle, run: AnalysisRun) -> LockHandle:
        if not handle.token:
            raise LockLost(run.repository, run.id)
        renewed = self.lock.renew(handle)
        if renewed is None:
            raise LockLost(run.repository, run.id)
        return renewed

    def _fetch_metrics(self, run: AnalysisRun, handle: LockHandle):
        """Fetch with bounded exponential backoff. Returns (metrics, handle, attempts)."""
        attempts = self.config.retry_attempts
        for attempt in range(1, attempts + 1):
            handle = self._require_lease(handle, run)
            try:
                return self.provider.fetch_metrics(run.repository), handle, attempt
            except ProviderError as e:
                if not e.transient:
                    raise
                if attempt >= attempts:
                    raise ProviderError.permanent_error(
                        f"Metrics unavailable after {attempts} attempts: {e}", status_code=e.status_code,
                    ) from e
                delay = self.backoff_delay(attempt)
                logger.warning("Transient metrics error for '%s' (attempt %d/%d), retrying in %.1fs: %s",
                               run.repository, attempt, attempts, delay, e)
                self._sleep(delay)
            except ValueError as e:
                raise ProviderError.permanent_error(f"Invalid metrics payload: {e}") from e

    def _record_failure(self, run: AnalysisRun, token: str, reason: str, message: str) -> None:
        try:
            self.store.update_run(run.id, token, {
                'status': 'failed',
                'completed_at': self._clock(),
                'error_code': reason,
                'error_message': message[:_MAX_ERROR_MESSAGE],
            })
        except StoreConflict:
            logger.info("Run %s was already closed, not recording '%s'", run.id, reason)

    def _invalidate_caches(self, run: AnalysisRun) -> None:
        tags = {project_tag(run.repository), RECENT_ANALYSES_TAG}
        try:
            self.cache.invalidate(tags)
        except Exception:
            logger.warning("Cache invalidation failed after run %s", run.id, exc_info=True)

    def _enqueue(self, run_id: str) -> None:
        from rq import Retry
        from repopulse.extensions import get_queue
        get_queue().enqueue(
            run_analysis_job, run_id,
            job_timeout=self.config.lock_ttl_seconds,
            retry=Retry(max=3, interval=[10, 30, 60]),
        )


# ── Default wiring + RQ job entry points ─────────────────────────────────────

_orchestrator = None


def get_orchestrator() -> AnalysisOrchestrator:
    """Process-wide orchestrator wired to Postgres, Redis and GitHub."""
    global _orchestrator
    if _orchestrator is None:
        from repopulse.extensions import get_redis_client
        from repopulse.services.cache import RedisCacheGateway
        from repopulse.services.github import GitHubMetricsProvider
        from repopulse.services.run_store import SqlRunStore

        config = AnalysisConfig.from_env()
        redis_client = get_redis_client()
        _orchestrator = AnalysisOrchestrator(
            store=SqlRunStore(),
            lock=RunLock(redis_client, ttl_seconds=config.lock_ttl_seconds),
            provider=GitHubMetricsProvider(),
            cache=RedisCacheGateway(redis_client),
            config=config,
        )
    return _orchestrator


def run_analysis_job(run_id: str) -> Dict:
    """RQ entry point for one analysis run."""
    return get_orchestrator().run(run_id).to_dict()


def sweep_stalled_runs_job(limit: int = 10) -> Dict[str, int]:
    """RQ form of POST /api/internal/sweep."""
    return get_orchestrator().sweep_stalled_runs(limit)


def refresh_stale_repositories_job(limit: int = 50) -> List[Dict]:
    """RQ form of POST /api/internal/refresh."""
    return [handle.to_dict() for handle in get_orchestrator().refresh_stale_repositories(limit)]
