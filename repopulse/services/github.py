"""
GitHub metrics provider — one GraphQL call per repository.

Maps repository activity onto a MetricsPayload and classifies failures as
transient (retry) or permanent (give up) ProviderErrors.
"""
import logging
import statistics
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests

from repopulse.config import (
    GITHUB_API_URL, GITHUB_TIMEOUT_SECONDS, GITHUB_TOKEN, RECENT_ISSUE_SAMPLE_SIZE,
)
from repopulse.models.assessment import MetricsPayload, RepositoryKey
from repopulse.pipeline.base import MetricsProvider
from repopulse.pipeline.errors import ProviderError

logger = logging.getLogger('services.github')

RECENT_ACTIVITY_DAYS = 90
RESOLUTION_WINDOW_DAYS = 365

REPO_METRICS_QUERY = """
query RepoMetrics($owner: String!, $repo: String!, $since: GitTimestamp!, $issueSample: Int!) {
  rateLimit { limit remaining cost resetAt }
  repository(owner: $owner, name: $repo) {
    defaultBranchRef {
      target {
        ... on Commit {
          latestCommit: history(first: 1) { nodes { committedDate } }
          recentCommitHistory: history(first: 1, since: $since) { totalCount }
        }
      }
    }
    latestRelease { publishedAt }
    openIssues: issues(states: OPEN) { totalCount }
    closedIssues: issues(states: CLOSED) { totalCount }
    openPRs: pullRequests(states: OPEN) { totalCount }
    recentIssues: issues(first: $issueSample, orderBy: {field: CREATED_AT, direction: DESC}) {
      nodes { createdAt closedAt state }
    }
  }
}
"""

# HTTP statuses worth retrying
_TRANSIENT_STATUSES = {429, 500, 502, 503, 504}


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _days_between(earlier: Optional[datetime], later: datetime) -> Optional[int]:
    if earlier is None:
        return None
    return max(0, (later - earlier).days)


def build_metrics_payload(repository: Dict[str, Any], now: datetime) -> MetricsPayload:
    """Turn the `repository` object of a RepoMetrics response into a MetricsPayload."""
    target = ((repository.get('defaultBranchRef') or {}).get('target') or {})
    commit_nodes = ((target.get('latestCommit') or {}).get('nodes') or [])
    last_commit_at = _parse_timestamp(commit_nodes[0].get('committedDate')) if commit_nodes else None
    commits_last_90_days = (target.get('recentCommitHistory') or {}).get('totalCount')
    if commits_last_90_days is None and target:
        commits_last_90_days = 0

    last_release_at = _parse_timestamp((repository.get('latestRelease') or {}).get('publishedAt'))

    open_issues = (repository.get('openIssues') or {}).get('totalCount') or 0
    closed_issues = (repository.get('closedIssues') or {}).get('totalCount') or 0
    total_issues = open_issues + closed_issues
    open_issues_percent = round(open_issues / total_issues, 3) if total_issues else None

    window_start = now - timedelta(days=RESOLUTION_WINDOW_DAYS)
    recent_issues = (repository.get('recentIssues') or {}).get('nodes') or []
    resolution_days: List[int] = []
    for issue in recent_issues:
        if issue.get('state') != 'CLOSED' or not issue.get('closedAt'):
            continue
        created_at = _parse_timestamp(issue.get('createdAt'))
        closed_at = _parse_timestamp(issue['closedAt'])
        if created_at and closed_at >= window_start:
            resolution_days.append(max(0, (closed_at - created_at).days))
    median_resolution = float(statistics.median(resolution_days)) if resolution_days else None

    return MetricsPayload(
        days_since_last_commit=_days_between(last_commit_at, now),
        commits_last_90_days=commits_last_90_days,
        days_since_last_release=_days_between(last_release_at, now),
        open_issues_percent=open_issues_percent,
        median_issue_resolution_days=median_resolution,
        open_prs_count=(repository.get('openPRs') or {}).get('totalCount'),
        recent_issues_sampled=len(recent_issues),
    )


class GitHubMetricsProvider(MetricsProvider):
    """
    GitHub GraphQL client.

    Timeouts, connection errors, 5xx, 429 and rate-limited 403s are transient;
    bad credentials, missing repositories and malformed data are permanent.
    """

    def __init__(self, token: Optional[str] = None, api_url: Optional[str] = None,
                 timeout: float = GITHUB_TIMEOUT_SECONDS, clock=None):
        self.token = token or GITHUB_TOKEN
        self.api_url = (api_url or GITHUB_API_URL).rstrip('/')
        self.timeout = timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def headers(self) -> Dict[str, str]:
        headers = {
            'Accept': 'application/vnd.github+json',
            'Content-Type': 'application/json',
        }
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def fetch_metrics(self, repository: RepositoryKey) -> MetricsPayload:
        now = self._clock()
        variables = {
            'owner': repository.owner,
            'repo': repository.project,
            'since': (now - timedelta(days=RECENT_ACTIVITY_DAYS)).isoformat(),
            'issueSample': RECENT_ISSUE_SAMPLE_SIZE,
        }
        data = self._graphql(REPO_METRICS_QUERY, variables, label=f'RepoMetrics ({repository})')

        repo = data.get('repository')
        if not repo:
            raise ProviderError.permanent_error(f"Repository {repository} not found", status_code=404)

        try:
            return build_metrics_payload(repo, now)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise ProviderError.permanent_error(f"Unexpected GitHub data for {repository}: {e}") from e

    def _graphql(self, query: str, variables: Dict[str, Any], label: str) -> Dict[str, Any]:
        url = f'{self.api_url}/graphql'
        started = time.monotonic()
        try:
            response = requests.post(
                url, json={'query': query, 'variables': variables},
                headers=self.headers, timeout=self.timeout,
            )
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.warning("GitHub API: %s | duration=%.2fs | error=%s", label, time.monotonic() - started, e)
            raise ProviderError.transient_error(f"GitHub unreachable: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ProviderError.permanent_error(f"GitHub request failed: {e}") from e

        duration = time.monotonic() - started
        status = response.status_code

        if status in _TRANSIENT_STATUSES or (status == 403 and self._rate_limited(response)):
            logger.warning("GitHub API: %s | duration=%.2fs | status=%d", label, duration, status)
            raise ProviderError.transient_error(f"GitHub returned {status}", status_code=status)
        if status >= 400:
            logger.warning("GitHub API: %s | duration=%.2fs | status=%d | body=%s",
                           label, duration, status, response.text[:200])
            raise ProviderError.permanent_error(f"GitHub returned {status}", status_code=status)

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError.transient_error(f"GitHub returned invalid JSON: {e}", status_code=status) from e

        errors = body.get('errors') or []
        if errors:
            types = {err.get('type') for err in errors}
            message = '; '.join(err.get('message', '') for err in errors)
            if 'NOT_FOUND' in types:
                raise ProviderError.permanent_error(f"GitHub: {message}", status_code=404)
            if 'RATE_LIMITED' in types:
                raise ProviderError.transient_error(f"GitHub: {message}", status_code=429)
            if not body.get('data'):
                raise ProviderError.permanent_error(f"GitHub: {message}")

        data = body.get('data') or {}
        rate = data.get('rateLimit') or {}
        logger.info("GitHub API: %s | duration=%.2fs | status=%d | cost=%s | remaining=%s/%s",
                    label, duration, status, rate.get('cost'), rate.get('remaining'), rate.get('limit'))
        return data

    @staticmethod
    def _rate_limited(response) -> bool:
        if response.headers.get('x-ratelimit-remaining') == '0':
            return True
        return 'rate limit' in (response.text or '').lower()
