"""
AnalysisRun — in-memory view of one persisted analysis run.

The run store owns the durable record; the orchestrator works on this view
and writes back through RunStore.update_run() with the run's lock token.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from repopulse.config import ACTIVE_RUN_STATUSES, TERMINAL_RUN_STATUSES
from repopulse.models.assessment import (
    AssessmentResult, MetricsPayload, RepositoryKey, RiskCategory,
)
from repopulse.pipeline.confidence import compute_confidence


@dataclass
class AnalysisRun:
    id: str
    repository: RepositoryKey
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    lock_token: Optional[str] = None
    step: Optional[str] = None
    attempt_count: int = 0
    trigger_source: str = 'api'
    updated_at: Optional[datetime] = None
    metrics: Optional[MetricsPayload] = None
    category: Optional[RiskCategory] = None
    score: Optional[float] = None
    breakdown: Dict[str, float] = field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    @property
    def result(self) -> Optional[AssessmentResult]:
        """The assessment, present only once the run has succeeded."""
        if self.status != 'succeeded' or self.category is None or self.score is None:
            return None
        return AssessmentResult(category=self.category, score=self.score, breakdown=dict(self.breakdown))

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Serializable view. Terminal runs carry their confidence as of `now`."""
        confidence = compute_confidence(self, now).to_dict() if self.is_terminal else None
        return {
            'id': self.id,
            'repository': {
                'owner': self.repository.owner,
                'project': self.repository.project,
                'full_name': self.repository.full_name,
            },
            'status': self.status,
            'step': self.step,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'attempt_count': self.attempt_count,
            'trigger_source': self.trigger_source,
            'metrics': self.metrics.to_dict() if self.metrics else None,
            'category': self.category.value if self.category else None,
            'score': self.score,
            'breakdown': dict(self.breakdown) if self.breakdown else None,
            'error_code': self.error_code,
            'error_message': self.error_message,
            'confidence': confidence,
        }
