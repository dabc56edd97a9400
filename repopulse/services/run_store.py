"""
Postgres persistence for analysis runs — the RunStore the orchestrator uses.

Runs are append/update-only. update_run() is a single conditional UPDATE on
(id, lock_token, active status), so two writers holding different tokens can
never both succeed.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update

from repopulse.config import (
    ACTIVE_RUN_STATUSES, REASON_LOCK_LOST, RUN_STATUSES, RUN_STEPS, TERMINAL_RUN_STATUSES,
)
from repopulse.database import get_session
from repopulse.models.analysis_run import AnalysisRun
from repopulse.models.assessment import MetricsPayload, RepositoryKey, RiskCategory
from repopulse.models.db_analysis_run import DbAnalysisRun
from repopulse.pipeline.base import RunStore
from repopulse.pipeline.errors import StoreConflict

logger = logging.getLogger('services.run_store')

# Columns update_run() may touch
_PATCHABLE = {
    'status', 'step', 'completed_at', 'attempt_count', 'metrics', 'category',
    'score', 'breakdown', 'error_code', 'error_message',
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _to_domain(row: DbAnalysisRun) -> AnalysisRun:
    return AnalysisRun(
        id=row.id,
        repository=RepositoryKey(owner=row.owner, project=row.project),
        status=row.status,
        started_at=_as_utc(row.started_at),
        completed_at=_as_utc(row.completed_at),
        lock_token=row.lock_token,
        step=row.step,
        attempt_count=row.attempt_count or 0,
        trigger_source=row.trigger_source or 'api',
        updated_at=_as_utc(row.updated_at),
        metrics=MetricsPayload.from_dict(row.metrics) if row.metrics else None,
        category=RiskCategory(row.category) if row.category else None,
        score=row.score,
        breakdown=row.breakdown or {},
        error_code=row.error_code,
        error_message=row.error_message,
    )


def _serialize_patch(patch: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    unknown = set(patch) - _PATCHABLE
    if unknown:
        raise ValueError(f"Cannot patch run fields: {', '.join(sorted(unknown))}")

    values = dict(patch)
    status = values.get('status')
    if status is not None and status not in RUN_STATUSES:
        raise ValueError(f"Unknown run status: {status}")
    step = values.get('step')
    if step is not None and step not in RUN_STEPS:
        raise ValueError(f"Unknown run step: {step}")

    if isinstance(values.get('metrics'), MetricsPayload):
        values['metrics'] = values['metrics'].to_dict()
    if isinstance(values.get('category'), RiskCategory):
        values['category'] = values['category'].value

    if status in TERMINAL_RUN_STATUSES:
        # completed_at is set iff terminal; the lease token goes with it
        values['completed_at'] = values.get('completed_at') or now
        values['lock_token'] = None
    elif 'completed_at' in values:
        raise ValueError("completed_at can only be set together with a terminal status")

    values['updated_at'] = now
    return values


class SqlRunStore(RunStore):
    """
    SQLAlchemy RunStore.

    `session_factory` defaults to repopulse.database.get_session; tests pass a
    sessionmaker bound to an in-memory engine.
    """

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or get_session

    def create_run(self, repository: RepositoryKey, lock_token: str,
                   trigger_source: str = 'api', now: Optional[datetime] = None) -> AnalysisRun:
        now = now or _utcnow()
        session = self._session_factory()
        try:
            # A crashed holder may have left an active row behind; the caller
            # holds the lease now, so that run can never finish.
            superseded = session.execute(
                update(DbAnalysisRun)
                .where(DbAnalysisRun.repository_key == repository.full_name)
                .where(DbAnalysisRun.status.in_(ACTIVE_RUN_STATUSES))
                .values(
                    status='failed',
                    lock_token=None,
                    completed_at=now,
                    updated_at=now,
                    error_code=REASON_LOCK_LOST,
                    error_message='Superseded by a newer run after its lease expired',
                )
            ).rowcount
            if superseded:
                logger.info("Superseded %d stale active run(s) for '%s'", superseded, repository)

            row = DbAnalysisRun(
                id=str(uuid.uuid4()),
                owner=repository.owner,
                project=repository.project,
                repository_key=repository.full_name,
                status='pending',
                lock_token=lock_token,
                attempt_count=0,
                trigger_source=trigger_source,
                started_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            return _to_domain(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_run(self, run_id: str) -> Optional[AnalysisRun]:
        session = self._session_factory()
        try:
            row = session.get(DbAnalysisRun, run_id)
            return _to_domain(row) if row else None
        finally:
            session.close()

    def get_latest_run(self, repository: RepositoryKey) -> Optional[AnalysisRun]:
        return self._latest(repository)

    def get_latest_succeeded_run(self, repository: RepositoryKey) -> Optional[AnalysisRun]:
        return self._latest(repository, status='succeeded')

    def update_run(self, run_id: str, expected_lock_token: str, patch: Dict[str, Any]) -> AnalysisRun:
        if not expected_lock_token:
            raise StoreConflict(run_id, 'no lock token')
        values = _serialize_patch(patch, _utcnow())
        session = self._session_factory()
        try:
            result = session.execute(
                update(DbAnalysisRun)
                .where(DbAnalysisRun.id == run_id)
                .where(DbAnalysisRun.lock_token == expected_lock_token)
                .where(DbAnalysisRun.status.in_(ACTIVE_RUN_STATUSES))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise StoreConflict(run_id, 'lock token mismatch or run already closed')
            session.commit()
            row = session.get(DbAnalysisRun, run_id, populate_existing=True)
            return _to_domain(row)
        except StoreConflict:
            raise
        except Exception:
            session.rollback()
            logger.error("Failed to update run %s", run_id, exc_info=True)
            raise
        finally:
            session.close()

    def list_recent_succeeded(self, limit: int = 20) -> List[AnalysisRun]:
        session = self._session_factory()
        try:
            latest = (
                select(
                    DbAnalysisRun.repository_key,
                    func.max(DbAnalysisRun.completed_at).label('completed_at'),
                )
                .where(DbAnalysisRun.status == 'succeeded')
                .group_by(DbAnalysisRun.repository_key)
                .subquery()
            )
            rows = session.scalars(
                select(DbAnalysisRun)
                .join(latest, (DbAnalysisRun.repository_key == latest.c.repository_key)
                      & (DbAnalysisRun.completed_at == latest.c.completed_at))
                .where(DbAnalysisRun.status == 'succeeded')
                .order_by(DbAnalysisRun.completed_at.desc())
                .limit(limit)
            ).all()
            return [_to_domain(r) for r in rows]
        finally:
            session.close()

    def list_active_runs(self, limit: int = 50) -> List[AnalysisRun]:
        session = self._session_factory()
        try:
            rows = session.scalars(
                select(DbAnalysisRun)
                .where(DbAnalysisRun.status.in_(ACTIVE_RUN_STATUSES))
                .order_by(DbAnalysisRun.updated_at.asc())
                .limit(limit)
            ).all()
            return [_to_domain(r) for r in rows]
        finally:
            session.close()

    def list_latest_runs(self, limit: int = 50) -> List[AnalysisRun]:
        session = self._session_factory()
        try:
            latest = (
                select(
                    DbAnalysisRun.repository_key,
                    func.max(DbAnalysisRun.started_at).label('started_at'),
                )
                .group_by(DbAnalysisRun.repository_key)
                .subquery()
            )
            rows = session.scalars(
                select(DbAnalysisRun)
                .join(latest, (DbAnalysisRun.repository_key == latest.c.repository_key)
                      & (DbAnalysisRun.started_at == latest.c.started_at))
                .order_by(DbAnalysisRun.started_at.asc())
                .limit(limit)
            ).all()
            return [_to_domain(r) for r in rows]
        finally:
            session.close()

    def _latest(self, repository: RepositoryKey, status: Optional[str] = None) -> Optional[AnalysisRun]:
        session = self._session_factory()
        try:
            query = select(DbAnalysisRun).where(DbAnalysisRun.repository_key == repository.full_name)
            if status:
                query = query.where(DbAnalysisRun.status == status)
            # Commit order does not follow start order under retries
            row = session.scalars(
                query.order_by(DbAnalysisRun.started_at.desc(), DbAnalysisRun.updated_at.desc()).limit(1)
            ).first()
            return _to_domain(row) if row else None
        finally:
            session.close()
