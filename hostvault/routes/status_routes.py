"""
Status routes - read-only JSON views of backup state and run history.
"""

from flask import Blueprint, jsonify, request

from hostvault import db
from hostvault.models import BackupRun
from hostvault.settings import ConfigError, get_settings
from hostvault.backup.health import HealthAggregator, HealthStatus
from hostvault.backup.reporting import domain_statistics, domain_status, list_recent
from hostvault.scheduler import get_schedule_probe


bp = Blueprint('status', __name__, url_prefix='/api')


def _selected_domains():
    """Domains named by the ?domain= query parameter (all by default)."""
    return get_settings().select(request.args.get('domain'))


@bp.errorhandler(ConfigError)
def handle_config_error(error):
    return jsonify({'error': str(error)}), 404


@bp.route('/status', methods=['GET'])
def get_status():
    """
    Freshness of the latest backup of each domain.

    Query params:
        - domain: Limit to one domain (default: all)
    """
    return jsonify({
        'domains': [domain_status(domain) for domain in _selected_domains()]
    })


@bp.route('/statistics', methods=['GET'])
def get_statistics():
    """
    Artifact count and size statistics per domain.

    Query params:
        - domain: Limit to one domain (default: all)
    """
    return jsonify({
        'domains': [domain_statistics(domain) for domain in _selected_domains()]
    })


@bp.route('/artifacts', methods=['GET'])
def get_artifacts():
    """
    Artifacts created in the last N days.

    Query params:
        - domain: Limit to one domain (default: all)
        - days: Window in days (default: 7, max: 365)
    """
    days = request.args.get('days', 7, type=int)
    if days < 0:
        return jsonify({'error': 'days must be >= 0'}), 400
    days = min(days, 365)

    return jsonify({
        'days': days,
        'domains': {
            domain.name: list_recent(domain, days)
            for domain in _selected_domains()
        }
    })


@bp.route('/health', methods=['GET'])
def get_health():
    """
    Full health assessment of each domain. Never sends alerts.

    Returns 200 when healthy and 503 otherwise.
    """
    settings = get_settings()
    aggregator = HealthAggregator(settings, schedule_probe=get_schedule_probe(settings))
    report = aggregator.assess(_selected_domains())
    code = 200 if report.overall == HealthStatus.HEALTHY else 503
    return jsonify(report.to_dict()), code


@bp.route('/runs', methods=['GET'])
def list_runs():
    """
    Backup run history.

    Query params:
        - domain: Filter by domain
        - status: Filter by status (success/success_with_warnings/failed)
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)
    """
    domain_filter = request.args.get('domain')
    status_filter = request.args.get('status')
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    query = BackupRun.query

    if domain_filter:
        query = query.filter(BackupRun.domain == get_settings().domain(domain_filter).name)

    if status_filter:
        if status_filter not in ['success', 'success_with_warnings', 'failed']:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    total_count = query.count()
    runs = query.order_by(BackupRun.started_at.desc()).limit(limit).offset(offset).all()

    return jsonify({
        'records': [run.to_dict() for run in runs],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/runs/<int:run_id>', methods=['GET'])
def get_run(run_id):
    """
    Get one backup run including its collector outcomes and logs.
    """
    run = db.get_or_404(BackupRun, run_id)
    return jsonify(run.to_dict(include_logs=True))
