"""
Assessment value types — repository identity, raw metrics, risk categories.

None of these carry identity or touch storage; they are shared by the
classifier, the orchestrator and the run store.
"""
import math
import re
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional


_VALID_NAME = re.compile(r'^[a-z0-9._-]+$')
_MAX_NAME_LENGTH = 100


@dataclass(frozen=True)
class RepositoryKey:
    """Case-normalized (owner, project) identity of a repository."""
    owner: str
    project: str

    @classmethod
    def from_parts(cls, owner: str, project: str) -> 'RepositoryKey':
        owner = (owner or '').strip().lower()
        project = (project or '').strip().lower()
        for label, value in (('owner', owner), ('project', project)):
            if not value or len(value) > _MAX_NAME_LENGTH or not _VALID_NAME.match(value):
                raise ValueError(f"Invalid repository {label}: {value!r}")
        return cls(owner=owner, project=project)

    @classmethod
    def parse(cls, full_name: str) -> 'RepositoryKey':
        owner, _, project = (full_name or '').partition('/')
        return cls.from_parts(owner, project)

    @property
    def full_name(self) -> str:
        return f'{self.owner}/{self.project}'

    def __str__(self):
        return self.full_name


def _check_non_negative(name: str, value, *, upper: Optional[float] = None, integral: bool = False):
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {type(value).__name__}")
    if integral and not isinstance(value, int):
        raise ValueError(f"{name} must be a whole number, got {value!r}")
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be finite and non-negative, got {value}")
    if upper is not None and value > upper:
        raise ValueError(f"{name} must be at most {upper}, got {value}")


@dataclass(frozen=True)
class MetricsPayload:
    """
    Activity signals for one repository at one point in time.

    A field is None when the provider has no data for it (no commits, no
    releases, no issues, no closed issues). None is not the same as zero.
    recent_issues_sampled is bookkeeping: how many recent issues the
    resolution median was drawn from. It does not feed the score.
    """
    days_since_last_commit: Optional[int] = None
    commits_last_90_days: Optional[int] = None
    days_since_last_release: Optional[int] = None
    open_issues_percent: Optional[float] = None
    median_issue_resolution_days: Optional[float] = None
    open_prs_count: Optional[int] = None
    recent_issues_sampled: Optional[int] = None

    def __post_init__(self):
        _check_non_negative('days_since_last_commit', self.days_since_last_commit, integral=True)
        _check_non_negative('commits_last_90_days', self.commits_last_90_days, integral=True)
        _check_non_negative('days_since_last_release', self.days_since_last_release, integral=True)
        _check_non_negative('open_issues_percent', self.open_issues_percent, upper=1.0)
        _check_non_negative('median_issue_resolution_days', self.median_issue_resolution_days)
        _check_non_negative('open_prs_count', self.open_prs_count, integral=True)
        _check_non_negative('recent_issues_sampled', self.recent_issues_sampled, integral=True)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MetricsPayload':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


class RiskCategory(str, Enum):
    """Maintenance risk, ordered best (healthy) to worst (inactive)."""
    HEALTHY = 'healthy'
    MODERATE = 'moderate'
    DECLINING = 'declining'
    INACTIVE = 'inactive'

    @property
    def rank(self) -> int:
        return _CATEGORY_ORDER.index(self)

    @property
    def label(self) -> str:
        return _CATEGORY_INFO[self][0]

    @property
    def description(self) -> str:
        return _CATEGORY_INFO[self][1]

    def __lt__(self, other):
        if not isinstance(other, RiskCategory):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, RiskCategory):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, RiskCategory):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, RiskCategory):
            return NotImplemented
        return self.rank >= other.rank


_CATEGORY_ORDER = [
    RiskCategory.HEALTHY,
    RiskCategory.MODERATE,
    RiskCategory.DECLINING,
    RiskCategory.INACTIVE,
]

_CATEGORY_INFO = {
    RiskCategory.HEALTHY: ('Healthy', 'Active maintenance. Monitor normally.'),
    RiskCategory.MODERATE: ('Moderate', 'Maintained but quieter. May be mature.'),
    RiskCategory.DECLINING: ('Declining', 'Reduced maintenance. Evaluate alternatives.'),
    RiskCategory.INACTIVE: ('Inactive', 'Unmaintained. High risk for long-term use.'),
}


@dataclass(frozen=True)
class AssessmentResult:
    """Classifier output. Unpacks as (category, score)."""
    category: RiskCategory
    score: float
    breakdown: Dict[str, float] = field(default_factory=dict)

    def __iter__(self):
        return iter((self.category, self.score))
