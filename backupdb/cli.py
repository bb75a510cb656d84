"""
Flask CLI commands for running and inspecting backup jobs.

    flask --app run.py run-job NAME
    flask --app run.py list-jobs
    flask --app run.py prune NAME
"""

import sys

import click
from flask.cli import with_appcontext

from backupdb import get_runner
from backupdb.backup.errors import RetentionError


def register_commands(app):
    app.cli.add_command(run_job_command)
    app.cli.add_command(list_jobs_command)
    app.cli.add_command(prune_command)


@click.command('run-job')
@click.argument('name')
@with_appcontext
def run_job_command(name):
    """Run a backup job now and record it in history."""
    from backupdb.scheduler import run_backup_job

    try:
        result, history = run_backup_job(name, trigger='cli')
    except ValueError as e:
        click.echo(str(e), err=True)
        sys.exit(2)

    for line in result.logs:
        click.echo(line)

    if not result.success:
        click.echo(f"Backup {name} failed: {result.error_message}", err=True)
        sys.exit(1)

    click.echo(
        f"Backup {name} completed in {result.duration_seconds:.1f}s: {result.archive_path} (history #{history.id})"
    )


@click.command('list-jobs')
@with_appcontext
def list_jobs_command():
    """List configured backup jobs."""
    runner = get_runner()

    if not runner.jobs:
        click.echo("No backup jobs configured")
        return

    for job in runner.jobs:
        schedule = job.cron_expr if job.schedule_enabled and job.cron_expr else 'manual'
        storage = ', '.join(job.storage) or 'local only'
        click.echo(f"{job.name}\t{job.type}\t{schedule}\tkeep={job.max_backups}\t{storage}")


@click.command('prune')
@click.argument('name')
@with_appcontext
def prune_command(name):
    """Apply the retention policy of a job to its archive directory."""
    runner = get_runner()

    try:
        report = runner.prune(name)
    except ValueError as e:
        click.echo(str(e), err=True)
        sys.exit(2)
    except RetentionError as e:
        click.echo(f"Retention failed: {e}", err=True)
        sys.exit(1)

    for path in report.deleted:
        click.echo(f"Removed {path}")
    click.echo(f"Kept {len(report.kept)} archives, removed {len(report.deleted)}")

    if report.errors:
        for path, error in report.errors.items():
            click.echo(f"Failed to remove {path}: {error}", err=True)
        sys.exit(1)
