"""
APScheduler configuration and job scheduling for backupdb.

Manages:
- Scheduled backup jobs (one cron trigger per job from the job file)
- Daily retention policy enforcement
- Manual job triggers
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from backupdb import db, get_runner
from backupdb.models import RunHistory


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

RETENTION_JOB_ID = 'retention_cleanup'


def build_trigger(cron_expr: str, tz='UTC') -> CronTrigger:
    """
    Build a cron trigger from a 5-field or 6-field expression.

    Six fields put seconds first: ``sec min hour day month day_of_week``.

    Raises:
        ValueError: If the expression is malformed
    """
    fields = cron_expr.split()

    if len(fields) == 5:
        return CronTrigger.from_crontab(cron_expr, timezone=tz)

    if len(fields) == 6:
        second, minute, hour, day, month, day_of_week = fields
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone=tz
        )

    raise ValueError(f"Wrong number of fields in cron expression {cron_expr!r}: got {len(fields)}, expected 5 or 6")


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app
    tz = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

    executors = {
        'default': ThreadPoolExecutor(max_workers=app.config.get('SCHEDULER_MAX_WORKERS', 3))
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=tz
    )

    scheduler.add_job(
        func=_enforce_retention_wrapper,
        trigger=build_trigger(app.config.get('RETENTION_CRON', '0 2 * * *'), tz),
        id=RETENTION_JOB_ID,
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info("APScheduler started")

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler. Runs already in progress are not interrupted."""
    global scheduler, flask_app

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler stopped")

    scheduler = None
    flask_app = None


def register_backup_jobs(jobs) -> int:
    """
    Add a cron trigger for every job with an enabled schedule.

    Jobs without an enabled schedule or cron expression, and jobs whose
    expression cannot be parsed, are logged and skipped.

    Returns:
        Number of jobs registered
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    tz = scheduler.timezone
    registered = 0

    for job in jobs:
        if not job.schedule_enabled or not job.cron_expr:
            logger.info(f"Scheduler is disabled or cron expression is empty for job {job.name}, skipping")
            continue

        try:
            trigger = build_trigger(job.cron_expr, tz)
        except ValueError as e:
            logger.error(f"Failed to schedule backup job {job.name}: {e}")
            continue

        scheduler.add_job(
            func=_execute_backup_wrapper,
            args=[job.name],
            trigger=trigger,
            id=f"backup_{job.name}",
            name=f"Backup: {job.name}",
            replace_existing=True
        )
        registered += 1
        logger.info(f"Scheduled backup job: {job.name} ({job.cron_expr})")

    return registered


def run_backup_job(job_name: str, trigger: str = 'scheduled'):
    """
    Run a job and record the run in history. Needs an app context.

    Args:
        job_name: Name of the job to run
        trigger: What started the run (scheduled, manual, cli)

    Returns:
        Tuple of (JobResult, RunHistory)

    Raises:
        ValueError: If job not found
    """
    runner = get_runner()
    job = runner.get_job(job_name)

    history = RunHistory(job_name=job.name, job_type=job.type, trigger=trigger, status='running')
    db.session.add(history)
    db.session.commit()

    result = runner.run(job_name)

    history.apply_result(result)
    db.session.commit()

    return result, history


def _execute_backup_wrapper(job_name: str, trigger: str = 'scheduled'):
    """
    Wrapper function for executing backup jobs in scheduler context.

    Args:
        job_name: Name of the job to execute
        trigger: What started the run
    """
    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing backup job: {job_name} ({trigger})")
            result, _ = run_backup_job(job_name, trigger=trigger)
            logger.info(f"Backup job {job_name} completed with status: {result.status}")
        except Exception as e:
            logger.exception(f"Scheduler backup job {job_name} failed: {e}")


def _enforce_retention_wrapper():
    with flask_app.app_context():
        try:
            get_runner().prune_all()
        except Exception as e:
            logger.exception(f"Retention cleanup failed: {e}")


def trigger_backup_now(job_name: str):
    """
    Manually trigger a backup job immediately.

    Args:
        job_name: Name of the job to execute

    Raises:
        ValueError: If job not found
        RuntimeError: If the scheduler is not running in this process
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    get_runner().get_job(job_name)

    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[job_name, 'manual'],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{job_name}_{int(now.timestamp() * 1000)}",
        name=f"Manual: {job_name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup job: {job_name}")


def get_next_run(job_name: str):
    """Next scheduled run of a job as an ISO string, or None."""
    if scheduler is None:
        return None
    job = scheduler.get_job(f"backup_{job_name}")
    next_run = getattr(job, 'next_run_time', None) if job else None
    return next_run.isoformat() if next_run else None


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        # Jobs added before start() have no next_run_time yet
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
