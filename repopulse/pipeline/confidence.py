"""
Confidence in an assessment — how much the score can be trusted.

The classifier scores absent signals as neutral, so a repository with no
data at all still lands in a category. compute_confidence() starts at 100
and deducts points for each data gap and for the age of the analysis:

    no metrics                 -> 0, low
    failed run                 -40
    no commit history          -12
    no open-issue ratio        -10
    no resolution time         -8
    no releases                -8
    issue sample hit its cap   -8
    older than 7 days          up to -25, reached at 30 days

Pure Python, no I/O.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from repopulse.config import RECENT_ISSUE_SAMPLE_SIZE

# Inclusive lower bounds on the 0-100 confidence score
HIGH_THRESHOLD = 85
MEDIUM_THRESHOLD = 60

STALENESS_GRACE_DAYS = 7
STALENESS_MAX_PENALTY_DAYS = 30
STALENESS_MAX_PENALTY_POINTS = 25

SECONDS_PER_DAY = 24 * 60 * 60


class ConfidenceLevel(str, Enum):
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'

    @property
    def label(self) -> str:
        return _LEVEL_INFO[self][0]

    @property
    def description(self) -> str:
        return _LEVEL_INFO[self][1]


_LEVEL_INFO = {
    ConfidenceLevel.HIGH: ('High confidence', 'Score is based on complete, recent data.'),
    ConfidenceLevel.MEDIUM: ('Medium confidence', 'Some data gaps or staleness may affect accuracy.'),
    ConfidenceLevel.LOW: ('Low confidence', 'Significant data issues. Treat the score cautiously.'),
}


@dataclass(frozen=True)
class ConfidencePenalty:
    code: str
    points: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'points': self.points, 'reason': self.reason}


@dataclass(frozen=True)
class ConfidenceResult:
    level: ConfidenceLevel
    score: int
    penalties: List[ConfidencePenalty] = field(default_factory=list)

    @property
    def summary(self) -> Optional[str]:
        if not self.penalties:
            return None
        if len(self.penalties) == 1:
            return self.penalties[0].reason
        return 'Score may be approximate due to multiple data gaps'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'level': self.level.value,
            'label': self.level.label,
            'score': self.score,
            'penalties': [p.to_dict() for p in self.penalties],
            'summary': self.summary,
        }


def level_for_score(score: int) -> ConfidenceLevel:
    if score >= HIGH_THRESHOLD:
        return ConfidenceLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def staleness_penalty(analyzed_at: Optional[datetime], now: datetime) -> Optional[ConfidencePenalty]:
    """Linear from 0 points at the grace period to the maximum at STALENESS_MAX_PENALTY_DAYS."""
    if analyzed_at is None:
        return None
    days = (_as_utc(now) - _as_utc(analyzed_at)).total_seconds() / SECONDS_PER_DAY
    if days <= STALENESS_GRACE_DAYS:
        return None
    span = STALENESS_MAX_PENALTY_DAYS - STALENESS_GRACE_DAYS
    elapsed = min(days - STALENESS_GRACE_DAYS, span)
    # Half-points round up
    points = math.floor(elapsed / span * STALENESS_MAX_PENALTY_POINTS + 0.5)
    if points <= 0:
        return None
    whole_days = math.floor(days + 0.5)
    return ConfidencePenalty(
        'stale_analysis', points, f"Analysis is {whole_days} day{'' if whole_days == 1 else 's'} old",
    )


def _data_penalties(run) -> List[ConfidencePenalty]:
    metrics = run.metrics
    penalties = []
    if run.status == 'failed':
        penalties.append(ConfidencePenalty('run_failed', 40, 'Analysis failed'))
    if metrics.open_issues_percent is None:
        penalties.append(ConfidencePenalty('missing_open_issues_percent', 10, 'Issue health data unavailable'))
    if metrics.median_issue_resolution_days is None:
        penalties.append(ConfidencePenalty('missing_median_resolution', 8, 'Issue resolution time unavailable'))
    if metrics.days_since_last_commit is None:
        penalties.append(ConfidencePenalty('missing_commit_history', 12, 'No commit history found'))
    if metrics.days_since_last_release is None:
        penalties.append(ConfidencePenalty('no_releases', 8, 'No release history available'))
    sampled = metrics.recent_issues_sampled
    if sampled is not None and sampled >= RECENT_ISSUE_SAMPLE_SIZE:
        penalties.append(ConfidencePenalty('issues_capped', 8, 'Issue data may be sampled'))
    return penalties


def compute_confidence(run, now: Optional[datetime] = None) -> ConfidenceResult:
    """Confidence for an AnalysisRun as of `now` (defaults to the current time)."""
    if run.metrics is None:
        return ConfidenceResult(
            ConfidenceLevel.LOW, 0, [ConfidencePenalty('no_metrics', 100, 'No metrics available')],
        )

    penalties = _data_penalties(run)
    stale = staleness_penalty(run.completed_at or run.started_at, now or datetime.now(timezone.utc))
    if stale is not None:
        penalties.append(stale)

    score = max(0, 100 - sum(p.points for p in penalties))
    return ConfidenceResult(level_for_score(score), score, penalties)
