"""
Status routes - per-tier freshness and run history for external alerting.
"""

import hmac
from functools import wraps
from flask import Blueprint, jsonify, request, current_app

from vwbackup import get_backup_context
from vwbackup.backup.errors import BackupError
from vwbackup.models import RunRecord
from vwbackup.scheduler import get_tier_status, get_scheduled_jobs, is_scheduler_running, count_persisted_jobs


bp = Blueprint('status', __name__, url_prefix='/api/status')

VALID_TIERS = ('hourly', 'daily', 'monthly', 'yearly')
VALID_OPERATIONS = ('backup', 'verify', 'restore')
VALID_OUTCOMES = ('success', 'failure')


def token_required(f):
    """Require 'Authorization: Bearer <STATUS_API_TOKEN>' when a token is configured."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        token = current_app.config.get('STATUS_API_TOKEN')
        if token:
            header = request.headers.get('Authorization', '')
            scheme, _, provided = header.partition(' ')
            if scheme.lower() != 'bearer' or not hmac.compare_digest(provided.strip(), token):
                return jsonify({'error': 'unauthorized'}), 401
        return f(*args, **kwargs)
    return wrapper


@bp.route('/', methods=['GET'])
@token_required
def get_status():
    """
    Get per-tier status.

    Returns:
        JSON with:
        - tiers: last run, last success, staleness per tier
        - stale: True if any tier is stale
        - scheduler_status: running/stopped in this process
        - jobs: scheduled jobs in this process
        - persisted_jobs: rows in the job store, whether or not a scheduler is running
    """
    try:
        settings = get_backup_context().settings
    except BackupError as e:
        return jsonify(e.to_dict()), 503

    tiers = get_tier_status(settings)

    return jsonify({
        'tiers': tiers,
        'stale': any(entry['stale'] for entry in tiers),
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped',
        'jobs': get_scheduled_jobs(),
        'persisted_jobs': count_persisted_jobs()
    })


@bp.route('/runs', methods=['GET'])
@token_required
def list_runs():
    """
    Get run history with filtering and pagination.

    Query params:
        - tier: hourly/daily/monthly/yearly
        - operation: backup/verify/restore
        - outcome: success/failure
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    tier = request.args.get('tier')
    operation = request.args.get('operation')
    outcome = request.args.get('outcome')
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    limit = max(1, min(limit, 200))
    offset = max(offset, 0)

    query = RunRecord.query

    if tier:
        if tier not in VALID_TIERS:
            return jsonify({'error': 'Invalid tier filter'}), 400
        query = query.filter(RunRecord.tier == tier)

    if operation:
        if operation not in VALID_OPERATIONS:
            return jsonify({'error': 'Invalid operation filter'}), 400
        query = query.filter(RunRecord.operation == operation)

    if outcome:
        if outcome not in VALID_OUTCOMES:
            return jsonify({'error': 'Invalid outcome filter'}), 400
        query = query.filter(RunRecord.outcome == outcome)

    total_count = query.count()

    records = query.order_by(
        RunRecord.finished_at.desc(), RunRecord.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [record.to_dict() for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/runs/<run_id>', methods=['GET'])
@token_required
def get_run(run_id):
    """Get a single run record by run id."""
    record = RunRecord.query.filter_by(run_id=run_id).first()
    if record is None:
        return jsonify({'error': 'Run not found'}), 404
    return jsonify(record.to_dict())
