"""
Read side — what the API shows for a project and the homepage list.

Assessments and the recent-analyses list are served through ReadThroughCache
and tagged so a successful run's invalidation drops them.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from repopulse.config import AnalysisConfig
from repopulse.models.assessment import RepositoryKey
from repopulse.pipeline.base import RunStore
from repopulse.pipeline.confidence import compute_confidence
from repopulse.pipeline.freshness import HOMEPAGE_CACHE_LIFE
from repopulse.services.cache import RECENT_ANALYSES_TAG, ReadThroughCache, project_tag

logger = logging.getLogger('services.assessment')

MAX_RECENT_LIMIT = 100


def _assessment_cache_name(repository: RepositoryKey) -> str:
    return f'assessment:{repository.full_name}'


def _recent_cache_name(limit: int) -> str:
    return f'recent-analyses:{limit}'


class AssessmentService:
    """
    Project assessment, polling status and recent analyses.

    `enqueue_refresh(owner, project)` is called when a cached assessment
    turns stale; it defaults to an RQ job that reloads the entry. Confidence
    in a cached assessment is computed as of the load that filled the entry.
    """

    def __init__(self, store: RunStore, cache: ReadThroughCache, recent_cache: ReadThroughCache,
                 enqueue_refresh: Optional[Callable[[str, str], None]] = None, clock=None):
        self.store = store
        self.cache = cache
        self.recent_cache = recent_cache
        self._enqueue_refresh = enqueue_refresh or _enqueue_assessment_refresh
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def load_project_assessment(self, repository: RepositoryKey) -> Optional[Dict[str, Any]]:
        run = self.store.get_latest_succeeded_run(repository)
        return run.to_dict(now=self._clock()) if run else None

    def get_project_assessment(self, owner: str, project: str) -> Optional[Dict[str, Any]]:
        """Latest succeeded run for the project as a dict, or None if never analyzed."""
        repository = RepositoryKey.from_parts(owner, project)
        return self.cache.get_or_load(
            _assessment_cache_name(repository),
            lambda: self.load_project_assessment(repository),
            tags=[project_tag(repository)],
            on_stale=lambda: self._enqueue_refresh(repository.owner, repository.project),
        )

    def refresh_project_assessment(self, owner: str, project: str) -> Optional[Dict[str, Any]]:
        """Reload the cached assessment now."""
        repository = RepositoryKey.from_parts(owner, project)
        value = self.load_project_assessment(repository)
        self.cache.put(_assessment_cache_name(repository), value, tags=[project_tag(repository)])
        return value

    def get_project_status(self, owner: str, project: str) -> Dict[str, Any]:
        """Uncached status for polling clients."""
        repository = RepositoryKey.from_parts(owner, project)
        latest = self.store.get_latest_run(repository)
        if latest is not None and latest.status == 'succeeded':
            view_ready = True
        else:
            view_ready = self.store.get_latest_succeeded_run(repository) is not None
        return {
            'repository': repository.full_name,
            'latest_run': _status_view(latest) if latest else None,
            'view_ready': view_ready,
        }

    def list_recent_analyses(self, limit: int = 20) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), MAX_RECENT_LIMIT))
        return self.recent_cache.get_or_load(
            _recent_cache_name(limit),
            lambda: [_summary_view(run, self._clock()) for run in self.store.list_recent_succeeded(limit)],
            tags=[RECENT_ANALYSES_TAG],
        )


def _status_view(run) -> Dict[str, Any]:
    return {
        'id': run.id,
        'status': run.status,
        'step': run.step or 'pending',
        'attempt_count': run.attempt_count,
        'updated_at': (run.updated_at or run.started_at).isoformat(),
        'error_code': run.error_code,
        'error_message': run.error_message,
    }


def _summary_view(run, now: datetime) -> Dict[str, Any]:
    return {
        'repository': run.repository.full_name,
        'owner': run.repository.owner,
        'project': run.repository.project,
        'category': run.category.value if run.category else None,
        'score': run.score,
        'completed_at': run.completed_at.isoformat() if run.completed_at else None,
        'confidence': compute_confidence(run, now).level.value,
    }


# ── Default wiring + RQ job ──────────────────────────────────────────────────

_service = None


def get_assessment_service() -> AssessmentService:
    global _service
    if _service is None:
        from repopulse.extensions import get_redis_client
        from repopulse.services.run_store import SqlRunStore

        config = AnalysisConfig.from_env()
        redis_client = get_redis_client()
        _service = AssessmentService(
            store=SqlRunStore(),
            cache=ReadThroughCache(redis_client, config.cache_life),
            recent_cache=ReadThroughCache(redis_client, HOMEPAGE_CACHE_LIFE),
        )
    return _service


def refresh_assessment_job(owner: str, project: str) -> None:
    """RQ entry point for a background cache refresh."""
    get_assessment_service().refresh_project_assessment(owner, project)


def _enqueue_assessment_refresh(owner: str, project: str) -> None:
    from repopulse.extensions import get_queue
    get_queue().enqueue(refresh_assessment_job, owner, project, job_timeout=60)
    logger.debug("Queued cache refresh for '%s/%s'", owner, project)
