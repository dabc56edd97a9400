"""
Analysis API — start analyses, poll status, read assessments.
"""
import logging

from flask import Blueprint, jsonify, request

from repopulse.config import SWEEP_TOKEN
from repopulse.parse_project import parse_project
from repopulse.pipeline.errors import LockUnavailableError
from repopulse.pipeline import orchestrator
from repopulse.services import assessment

logger = logging.getLogger('routes.analysis')

bp = Blueprint('analysis', __name__)

LOCK_RETRY_AFTER_SECONDS = 5


def _clamp(value, default: int, low: int = 1, high: int = 100) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        try:
            value = int(value)
        except (TypeError, ValueError):
            return default
    return min(max(value, low), high)


def _lock_unavailable():
    resp = jsonify({'error': 'Analysis temporarily unavailable, try again shortly'})
    resp.status_code = 503
    resp.headers['Retry-After'] = str(LOCK_RETRY_AFTER_SECONDS)
    return resp


# ── Start an analysis ────────────────────────────────────────────────────────

@bp.route('/api/analyze', methods=['POST'])
def analyze():
    """Start (or reuse) an analysis for a repository reference."""
    data = request.get_json(silent=True) or {}
    query = data.get('query')
    if not isinstance(query, str):
        return jsonify({'error': 'query is required'}), 400

    parsed = parse_project(query)
    if parsed is None:
        return jsonify({'error': 'Enter a repository as owner/project or a GitHub URL'}), 400
    owner, project = parsed

    try:
        handle = orchestrator.get_orchestrator().request_analysis(owner, project, force=bool(data.get('force')))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except LockUnavailableError:
        logger.warning("Lock store unavailable, rejecting analysis for '%s/%s'", owner, project)
        return _lock_unavailable()

    return jsonify(handle.to_dict()), 202


# ── Read side ────────────────────────────────────────────────────────────────

@bp.route('/api/projects/<owner>/<project>/status')
def project_status(owner, project):
    try:
        status = assessment.get_assessment_service().get_project_status(owner, project)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify(status)


@bp.route('/api/projects/<owner>/<project>')
def project_assessment(owner, project):
    try:
        result = assessment.get_assessment_service().get_project_assessment(owner, project)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    if result is None:
        return jsonify({'error': 'Project has not been analyzed yet'}), 404
    return jsonify(result)


@bp.route('/api/analyses/recent')
def recent_analyses():
    limit = _clamp(request.args.get('limit'), default=20)
    return jsonify({'analyses': assessment.get_assessment_service().list_recent_analyses(limit)})


@bp.route('/api/runs/<run_id>')
def get_run(run_id):
    run = orchestrator.get_orchestrator().store.get_run(run_id)
    if run is None:
        return jsonify({'error': 'Run not found'}), 404
    return jsonify(run.to_dict())


# ── Internal ─────────────────────────────────────────────────────────────────

def _authorized() -> bool:
    # No token configured means a local/dev deployment
    if not SWEEP_TOKEN:
        return True
    return request.headers.get('Authorization') == f'Bearer {SWEEP_TOKEN}'


@bp.route('/api/internal/sweep', methods=['POST'])
def sweep():
    """Fail runs whose lease lapsed and re-dispatch stuck pending runs."""
    if not _authorized():
        return jsonify({'error': 'Unauthorized'}), 401
    data = request.get_json(silent=True) or {}
    limit = _clamp(data.get('limit'), default=10)
    try:
        processed = orchestrator.get_orchestrator().sweep_stalled_runs(limit)
    except LockUnavailableError:
        return _lock_unavailable()
    return jsonify({'ok': True, 'processed': processed})


@bp.route('/api/internal/refresh', methods=['POST'])
def refresh():
    """Re-analyze tracked repositories whose latest result has gone stale."""
    if not _authorized():
        return jsonify({'error': 'Unauthorized'}), 401
    data = request.get_json(silent=True) or {}
    limit = _clamp(data.get('limit'), default=50)
    handles = orchestrator.get_orchestrator().refresh_stale_repositories(limit)
    return jsonify({'ok': True, 'requested': [handle.to_dict() for handle in handles]})
