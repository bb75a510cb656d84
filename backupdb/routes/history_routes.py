"""
Backup history routes - View backup execution history.
"""

from flask import Blueprint, jsonify, request

from backupdb.models import RunHistory


bp = Blueprint('history', __name__, url_prefix='/api/history')

VALID_STATUSES = ('running', 'success', 'failed')


@bp.route('/', methods=['GET'])
def list_history():
    """
    Get backup history with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/failed)
        - job: Filter by job name
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with history records and metadata
    """
    status_filter = request.args.get('status')
    job_filter = request.args.get('job')
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if limit < 1:
        limit = 1
    if offset < 0:
        offset = 0

    query = RunHistory.query

    if status_filter:
        if status_filter not in VALID_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(RunHistory.status == status_filter)

    if job_filter:
        query = query.filter(RunHistory.job_name == job_filter)

    total_count = query.count()

    records = query.order_by(
        RunHistory.started_at.desc(), RunHistory.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [record.to_dict() for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:history_id>', methods=['GET'])
def get_history_detail(history_id):
    """
    Get detailed information for a specific run, including logs.

    Args:
        history_id: Run history record ID
    """
    record = RunHistory.query.get_or_404(history_id)
    return jsonify(record.to_dict(include_logs=True))
