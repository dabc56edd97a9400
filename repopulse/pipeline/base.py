"""
Collaborator contracts for the orchestrator.

The orchestrator only sees these interfaces; concrete implementations live in
repopulse.services (GitHub, SQLAlchemy, Redis) and tests swap in doubles.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from repopulse.models.analysis_run import AnalysisRun
from repopulse.models.assessment import MetricsPayload, RepositoryKey


class MetricsProvider(ABC):
    """Source of activity signals for a repository."""

    @abstractmethod
    def fetch_metrics(self, repository: RepositoryKey) -> MetricsPayload:
        """
        Fetch the current MetricsPayload.

        Raises:
            ProviderError: transient (retry later) or permanent (give up).
        """
        ...


class RunStore(ABC):
    """
    Durable record of analysis runs. Rows are created and updated, never deleted.
    """

    @abstractmethod
    def create_run(self, repository: RepositoryKey, lock_token: str,
                   trigger_source: str = 'api', now: Optional[datetime] = None) -> AnalysisRun:
        """Insert a pending run holding `lock_token`, superseding any active run for the key."""
        ...

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[AnalysisRun]:
        ...

    @abstractmethod
    def get_latest_run(self, repository: RepositoryKey) -> Optional[AnalysisRun]:
        """Most recent run by started_at, whatever its status."""
        ...

    @abstractmethod
    def update_run(self, run_id: str, expected_lock_token: str, patch: Dict[str, Any]) -> AnalysisRun:
        """
        Apply `patch` if the run is active and still holds `expected_lock_token`.

        Raises:
            StoreConflict: the token no longer matches or the run is terminal.
        """
        ...

    @abstractmethod
    def get_latest_succeeded_run(self, repository: RepositoryKey) -> Optional[AnalysisRun]:
        ...

    @abstractmethod
    def list_recent_succeeded(self, limit: int = 20) -> List[AnalysisRun]:
        """Latest succeeded run per repository, most recently completed first."""
        ...

    @abstractmethod
    def list_active_runs(self, limit: int = 50) -> List[AnalysisRun]:
        """Pending/running runs, oldest update first."""
        ...

    @abstractmethod
    def list_latest_runs(self, limit: int = 50) -> List[AnalysisRun]:
        """Latest run per repository, oldest first."""
        ...


class CacheGateway(ABC):
    """Marks read-through cache entries stale by tag."""

    @abstractmethod
    def invalidate(self, tags: Iterable[str]) -> None:
        ...
