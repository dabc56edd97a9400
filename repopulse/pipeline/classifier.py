"""
Risk classifier — MetricsPayload → (RiskCategory, score).

Pure Python, no I/O. Six sub-scores are normalized to [0, 1] (higher is
healthier), combined with fixed weights, and the composite score is mapped
onto a category by inclusive lower thresholds.

Absent fields score a neutral mid-value: "no data" is not "bad data".
"""
from typing import Dict, Optional

from repopulse.models.assessment import AssessmentResult, MetricsPayload, RiskCategory


WEIGHTS = {
    'commit_recency': 0.30,
    'commit_volume': 0.15,
    'release_recency': 0.15,
    'issue_backlog': 0.15,
    'resolution_latency': 0.15,
    'pr_backlog': 0.10,
}

# Inclusive lower bounds, best category first
THRESHOLDS = [
    (0.75, RiskCategory.HEALTHY),
    (0.50, RiskCategory.MODERATE),
    (0.25, RiskCategory.DECLINING),
]

NEUTRAL = 0.5
NEUTRAL_RELEASE = 0.6  # many healthy projects rarely cut releases

# Reported scores are rounded to this precision
SCORE_PRECISION = 4

# Float noise allowance when comparing a composite against a threshold
BOUNDARY_TOLERANCE = 1e-9


def _linear(value: float, full_at: float, zero_at: float) -> float:
    """1.0 at or better than full_at, 0.0 at or worse than zero_at, linear between."""
    if full_at < zero_at:
        if value <= full_at:
            return 1.0
        if value >= zero_at:
            return 0.0
        return 1.0 - (value - full_at) / (zero_at - full_at)
    if value >= full_at:
        return 1.0
    if value <= zero_at:
        return 0.0
    return (value - zero_at) / (full_at - zero_at)


def score_commit_recency(days: Optional[int]) -> float:
    if days is None:
        return NEUTRAL
    return _linear(days, full_at=30, zero_at=365)


def score_commit_volume(commits: Optional[int]) -> float:
    if commits is None:
        return NEUTRAL
    return _linear(commits, full_at=10, zero_at=0)


def score_release_recency(days: Optional[int]) -> float:
    if days is None:
        return NEUTRAL_RELEASE
    return _linear(days, full_at=180, zero_at=730)


def score_issue_backlog(open_ratio: Optional[float]) -> float:
    if open_ratio is None:
        return NEUTRAL
    return _linear(open_ratio, full_at=0.0, zero_at=0.5)


def score_resolution_latency(days: Optional[float]) -> float:
    if days is None:
        return NEUTRAL
    return _linear(days, full_at=14, zero_at=180)


def score_pr_backlog(count: Optional[int]) -> float:
    if count is None:
        return NEUTRAL
    return _linear(count, full_at=0, zero_at=50)


def sub_scores(metrics: MetricsPayload) -> Dict[str, float]:
    return {
        'commit_recency': score_commit_recency(metrics.days_since_last_commit),
        'commit_volume': score_commit_volume(metrics.commits_last_90_days),
        'release_recency': score_release_recency(metrics.days_since_last_release),
        'issue_backlog': score_issue_backlog(metrics.open_issues_percent),
        'resolution_latency': score_resolution_latency(metrics.median_issue_resolution_days),
        'pr_backlog': score_pr_backlog(metrics.open_prs_count),
    }


def category_for_score(score: float) -> RiskCategory:
    """Map a composite score to a category. A score on a boundary takes the better category."""
    for lower_bound, category in THRESHOLDS:
        if score >= lower_bound - BOUNDARY_TOLERANCE:
            return category
    return RiskCategory.INACTIVE


def classify(metrics: MetricsPayload) -> AssessmentResult:
    """
    Compute the weighted composite score and its category.

    Total over every valid payload, including one with all fields absent.
    """
    breakdown = sub_scores(metrics)
    composite = sum(WEIGHTS[name] * breakdown[name] for name in WEIGHTS)
    composite = min(1.0, max(0.0, composite))
    return AssessmentResult(
        category=category_for_score(composite),
        score=round(composite, SCORE_PRECISION),
        breakdown={name: round(value, SCORE_PRECISION) for name, value in breakdown.items()},
    )
