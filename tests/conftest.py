"""Shared test fixtures."""
import dataclasses
import fnmatch
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from repopulse.config import ACTIVE_RUN_STATUSES, REASON_LOCK_LOST, TERMINAL_RUN_STATUSES
from repopulse.database import Base
from repopulse.models.analysis_run import AnalysisRun
from repopulse.models.assessment import MetricsPayload
from repopulse.pipeline.base import RunStore
from repopulse.pipeline.errors import StoreConflict
from repopulse.pipeline.lock import RELEASE_SCRIPT, RENEW_SCRIPT

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


# ── Fakes ────────────────────────────────────────────────────────────────────

class Clock:
    """Controllable UTC clock. Call it to read the time."""

    def __init__(self, start=NOW):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeRedis:
    """Minimal thread-safe in-memory Redis fake with key expiry on a fake clock."""

    def __init__(self, now=1_700_000_000.0):
        self.now = now
        self._data = {}
        self._expires = {}
        self._mutex = threading.RLock()
        self.calls = []

    def advance(self, seconds):
        with self._mutex:
            self.now += seconds

    def _purge(self, key):
        expires_at = self._expires.get(key)
        if expires_at is not None and expires_at <= self.now:
            self._data.pop(key, None)
            self._expires.pop(key, None)

    def _set_ttl(self, key, seconds):
        self._expires[key] = self.now + seconds

    def get(self, key):
        with self._mutex:
            self._purge(key)
            value = self._data.get(key)
            return value if isinstance(value, str) else None

    def set(self, key, value, nx=False, px=None, ex=None):
        with self._mutex:
            self._purge(key)
            if nx and key in self._data:
                return None
            self._data[key] = value
            self._expires.pop(key, None)
            if px is not None:
                self._set_ttl(key, px / 1000.0)
            elif ex is not None:
                self._set_ttl(key, ex)
            return True

    def setex(self, key, seconds, value):
        return self.set(key, value, ex=seconds)

    def delete(self, *keys):
        with self._mutex:
            removed = 0
            for key in keys:
                self._purge(key)
                if key in self._data:
                    removed += 1
                self._data.pop(key, None)
                self._expires.pop(key, None)
            return removed

    def exists(self, key):
        with self._mutex:
            self._purge(key)
            return int(key in self._data)

    def pexpire(self, key, ms):
        with self._mutex:
            self._purge(key)
            if key not in self._data:
                return 0
            self._set_ttl(key, int(ms) / 1000.0)
            return 1

    def expire(self, key, seconds):
        return self.pexpire(key, int(seconds) * 1000)

    def sadd(self, key, *members):
        with self._mutex:
            self._purge(key)
            current = self._data.setdefault(key, set())
            before = len(current)
            current.update(members)
            return len(current) - before

    def smembers(self, key):
        with self._mutex:
            self._purge(key)
            value = self._data.get(key)
            return set(value) if isinstance(value, set) else set()

    def keys(self, pattern='*'):
        with self._mutex:
            for key in list(self._data):
                self._purge(key)
            return [k for k in self._data if fnmatch.fnmatch(k, pattern)]

    def eval(self, script, numkeys, *args):
        keys, argv = args[:numkeys], args[numkeys:]
        with self._mutex:
            self.calls.append(('eval', keys, argv))
            if script == RELEASE_SCRIPT:
                if self.get(keys[0]) == argv[0]:
                    return self.delete(keys[0])
                return 0
            if script == RENEW_SCRIPT:
                if self.get(keys[0]) == argv[0]:
                    return self.pexpire(keys[0], argv[1])
                return 0
        raise NotImplementedError('FakeRedis only knows the lock scripts')

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    """Fake Redis pipeline that applies queued commands on execute()."""

    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    def __getattr__(self, name):
        def _queue(*args, **kwargs):
            self._ops.append((name, args, kwargs))
            return self
        return _queue

    def execute(self):
        results = [getattr(self._redis, name)(*args, **kwargs) for name, args, kwargs in self._ops]
        self._ops = []
        return results


class InMemoryRunStore(RunStore):
    """RunStore double with the same conditional-update rules as SqlRunStore."""

    def __init__(self, clock=None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._runs = {}
        self._seq = {}
        self._mutex = threading.Lock()
        self.update_calls = 0

    def _copy(self, run):
        return dataclasses.replace(run, breakdown=dict(run.breakdown))

    def create_run(self, repository, lock_token, trigger_source='api', now=None):
        now = now or self._clock()
        with self._mutex:
            for run_id, run in list(self._runs.items()):
                if run.repository == repository and run.status in ACTIVE_RUN_STATUSES:
                    self._runs[run_id] = dataclasses.replace(
                        run, status='failed', lock_token=None, completed_at=now, updated_at=now,
                        error_code=REASON_LOCK_LOST,
                    )
            run = AnalysisRun(
                id=str(uuid.uuid4()), repository=repository, status='pending',
                started_at=now, updated_at=now, lock_token=lock_token, trigger_source=trigger_source,
            )
            self._runs[run.id] = run
            self._seq[run.id] = len(self._seq)
            return self._copy(run)

    def get_run(self, run_id):
        with self._mutex:
            run = self._runs.get(run_id)
            return self._copy(run) if run else None

    def get_latest_run(self, repository):
        return self._latest(repository)

    def get_latest_succeeded_run(self, repository):
        return self._latest(repository, status='succeeded')

    def update_run(self, run_id, expected_lock_token, patch):
        now = self._clock()
        with self._mutex:
            self.update_calls += 1
            run = self._runs.get(run_id)
            if (run is None or not expected_lock_token or run.lock_token != expected_lock_token
                    or run.status not in ACTIVE_RUN_STATUSES):
                raise StoreConflict(run_id, 'lock token mismatch or run already closed')
            values = dict(patch)
            if isinstance(values.get('metrics'), dict):
                values['metrics'] = MetricsPayload.from_dict(values['metrics'])
            if values.get('status') in TERMINAL_RUN_STATUSES:
                values['completed_at'] = values.get('completed_at') or now
                values['lock_token'] = None
            elif 'completed_at' in values:
                raise ValueError("completed_at can only be set together with a terminal status")
            values['updated_at'] = now
            run = dataclasses.replace(run, **values)
            self._runs[run_id] = run
            return self._copy(run)

    def list_recent_succeeded(self, limit=20):
        with self._mutex:
            latest = {}
            for run in self._runs.values():
                if run.status != 'succeeded':
                    continue
                seen = latest.get(run.repository)
                if seen is None or run.completed_at > seen.completed_at:
                    latest[run.repository] = run
            runs = sorted(latest.values(), key=lambda r: r.completed_at, reverse=True)
            return [self._copy(r) for r in runs[:limit]]

    def list_active_runs(self, limit=50):
        with self._mutex:
            runs = [r for r in self._runs.values() if r.status in ACTIVE_RUN_STATUSES]
            runs.sort(key=lambda r: r.updated_at or r.started_at)
            return [self._copy(r) for r in runs[:limit]]

    def list_latest_runs(self, limit=50):
        with self._mutex:
            latest = {}
            for run in self._runs.values():
                seen = latest.get(run.repository)
                if seen is None or (run.started_at, self._seq[run.id]) > (seen.started_at, self._seq[seen.id]):
                    latest[run.repository] = run
            runs = sorted(latest.values(), key=lambda r: r.started_at)
            return [self._copy(r) for r in runs[:limit]]

    def _latest(self, repository, status=None):
        with self._mutex:
            runs = [r for r in self._runs.values()
                    if r.repository == repository and (status is None or r.status == status)]
            if not runs:
                return None
            return self._copy(max(runs, key=lambda r: (r.started_at, self._seq[r.id])))

    def all_runs(self):
        with self._mutex:
            return [self._copy(r) for r in self._runs.values()]


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def memory_store(clock):
    return InMemoryRunStore(clock)


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with schema created, shared across sessions."""
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    import repopulse.models.db_analysis_run  # noqa: F401
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    """SQLAlchemy session bound to in-memory SQLite. Rolls back after each test."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def make_metrics():
    """Factory fixture for MetricsPayload with healthy defaults."""
    def _make(**overrides):
        defaults = dict(
            days_since_last_commit=2,
            commits_last_90_days=120,
            days_since_last_release=20,
            open_issues_percent=0.1,
            median_issue_resolution_days=5.0,
            open_prs_count=4,
        )
        defaults.update(overrides)
        return MetricsPayload(**defaults)
    return _make


@pytest.fixture
def app():
    """Flask test app."""
    from repopulse import create_app
    app = create_app(create_tables=False)
    app.config['TESTING'] = True
    yield app


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c
