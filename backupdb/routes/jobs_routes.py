"""
Backup jobs routes - job listing, archives and manual execution.
"""

from flask import Blueprint, jsonify

from backupdb import get_runner
from backupdb.models import RunHistory
from backupdb.scheduler import get_next_run, trigger_backup_now


bp = Blueprint('jobs', __name__, url_prefix='/api/jobs')


def _job_to_dict(job):
    data = {
        'name': job.name,
        'type': job.type,
        'source_path': job.source_path or None,
        'storage': list(job.storage),
        'schedule_enabled': job.schedule_enabled,
        'cron_expr': job.cron_expr,
        'max_backups': job.max_backups,
        'ignore_files': list(job.ignore_files),
        'ignore_folders': list(job.ignore_folders),
        'next_run': get_next_run(job.name)
    }
    if job.ssh is not None:
        data['ssh'] = {
            'host': job.ssh.host,
            'port': job.ssh.port,
            'user': job.ssh.user,
            'mode': job.ssh.mode
        }
    if job.database is not None:
        data['database'] = {
            'names': list(job.database.names),
            'exclude': list(job.database.exclude),
            'host': job.database.host,
            'port': job.database.port
        }
    return data


def _archive_to_dict(archive):
    return {
        'filename': archive.filename,
        'path': archive.path,
        'created_at': archive.created_at.isoformat()
    }


@bp.route('/', methods=['GET'])
def list_jobs():
    """
    Get list of all backup jobs.

    Returns:
        JSON array of backup jobs
    """
    return jsonify([_job_to_dict(job) for job in get_runner().jobs])


@bp.route('/<name>', methods=['GET'])
def get_job(name):
    """
    Get a single backup job by name, with its latest archive and last run.

    Args:
        name: Backup job name

    Returns:
        JSON with job details
    """
    runner = get_runner()
    try:
        job = runner.get_job(name)
    except ValueError as e:
        return jsonify({'error': str(e)}), 404

    data = _job_to_dict(job)

    latest = runner.latest_archive(name)
    data['latest_archive'] = _archive_to_dict(latest) if latest else None

    last_run = RunHistory.query.filter_by(job_name=name).order_by(RunHistory.started_at.desc()).first()
    data['last_run'] = last_run.to_dict() if last_run else None

    return jsonify(data)


@bp.route('/<name>/run', methods=['POST'])
def run_job(name):
    """
    Queue an immediate run of a backup job.

    Args:
        name: Backup job name

    Returns:
        JSON with success message (202)
    """
    try:
        trigger_backup_now(name)
    except ValueError as e:
        return jsonify({'error': str(e)}), 404
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({'message': f'Backup job {name} triggered successfully'}), 202


@bp.route('/<name>/archives', methods=['GET'])
def list_archives(name):
    """
    List a job's local archives, newest first.

    Args:
        name: Backup job name

    Returns:
        JSON array of archives
    """
    try:
        archives = get_runner().list_archives(name)
    except ValueError as e:
        return jsonify({'error': str(e)}), 404

    return jsonify([_archive_to_dict(a) for a in archives])
