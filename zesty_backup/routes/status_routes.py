"""
Status routes - read-only view of backups, run history and logs.
"""

from flask import Blueprint, current_app, jsonify, request

from zesty_backup import db
from zesty_backup.backup.manifest import ManifestStore
from zesty_backup.errors import ConfigError
from zesty_backup.models import CycleRun
from zesty_backup.scheduler import get_scheduler_status
from zesty_backup.settings import load_settings
from zesty_backup.utils.logs import tail_log


bp = Blueprint('status', __name__, url_prefix='/api')

OPERATIONS = ('backup', 'upload', 'clean', 'restore')


def _settings():
    """Settings loaded by the CLI, or read from SETTINGS_FILE."""
    settings = current_app.config.get('ZESTY_SETTINGS')
    if settings is None:
        settings = load_settings(current_app.config['SETTINGS_FILE'])
    return settings


@bp.route('/status', methods=['GET'])
def get_status():
    """
    Get backup system status.

    Returns:
        JSON with:
        - storage: provider and bucket
        - backup: directories and retention
        - local_backups: number of local archives
        - last_runs: most recent run per operation
        - scheduler: daemon state when it runs in this process
    """
    try:
        settings = _settings()
    except ConfigError as e:
        return jsonify({'error': str(e)}), 500

    store = ManifestStore(settings.backup.local_backup_dir)
    entries = store.entries()

    last_runs = {}
    for operation in OPERATIONS:
        run = CycleRun.latest(operation)
        last_runs[operation] = run.to_dict() if run else None

    return jsonify({
        'storage': {
            'provider': settings.storage.provider,
            'bucket': settings.storage.bucket,
            'endpoint': settings.storage.endpoint,
        },
        'backup': {
            'local_backup_dir': str(settings.backup.local_backup_dir),
            'project_path': str(settings.backup.project_path),
            'retention_days': settings.backup.retention_days,
        },
        'local_backups': len(entries),
        'pending_uploads': sum(1 for entry in entries if not entry.is_uploaded),
        'last_runs': last_runs,
        'scheduler': get_scheduler_status(),
    })


@bp.route('/backups', methods=['GET'])
def list_backups():
    """
    List local archives, newest first.

    Returns:
        JSON array of manifest summaries
    """
    try:
        settings = _settings()
    except ConfigError as e:
        return jsonify({'error': str(e)}), 500

    store = ManifestStore(settings.backup.local_backup_dir)
    return jsonify([entry.summary() for entry in reversed(store.entries())])


@bp.route('/history', methods=['GET'])
def list_history():
    """
    Get run history.

    Query params:
        - operation: Filter by operation (backup/upload/clean/restore)
        - limit: Max number of records (default: 50, max: 200)
    """
    operation = request.args.get('operation')
    limit = request.args.get('limit', 50, type=int)

    # Enforce limits
    limit_max = current_app.config.get('HISTORY_LIMIT_MAX', 200)
    if limit > limit_max:
        limit = limit_max
    if limit < 1:
        limit = 1

    query = CycleRun.query
    if operation:
        if operation not in OPERATIONS:
            return jsonify({'error': 'Invalid operation filter'}), 400
        query = query.filter(CycleRun.operation == operation)

    records = query.order_by(CycleRun.started_at.desc(), CycleRun.id.desc()).limit(limit).all()
    return jsonify({
        'history': [record.to_dict() for record in records],
        'limit': limit,
    })


@bp.route('/history/<int:run_id>', methods=['GET'])
def get_history_detail(run_id):
    """Get one run including its logs."""
    record = db.session.get(CycleRun, run_id)
    if record is None:
        return jsonify({'error': 'Run not found'}), 404
    return jsonify(record.to_dict(include_logs=True))


@bp.route('/logs', methods=['GET'])
def get_logs():
    """
    Get the last lines of the log file.

    Query params:
        - lines: Number of lines (default: 100, max: 5000)
    """
    lines = request.args.get('lines', current_app.config.get('LOG_LINES_DEFAULT', 100), type=int)
    lines = max(0, min(lines, 5000))

    log_lines = tail_log(current_app.config['LOG_DIR'], lines)
    if log_lines is None:
        return jsonify({'lines': [], 'message': 'No log file found'})
    return jsonify({'lines': log_lines})
