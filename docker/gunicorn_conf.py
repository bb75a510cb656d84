# Gunicorn configuration for backupdb
# Only one worker may own the backup scheduler, or every job would run once per worker

import os
import logging

bind = f"0.0.0.0:{os.environ.get('PORT', '5000')}"
workers = int(os.environ.get('GUNICORN_WORKERS', '2'))
timeout = int(os.environ.get('GUNICORN_TIMEOUT', '120'))

logger = logging.getLogger('gunicorn.error')


def post_fork(server, worker):
    """
    Mark the first spawned worker (age 1) as the scheduler owner before it loads the app.

    create_app() reads SCHEDULER_WORKER and starts APScheduler only where it is 'true',
    so cron triggers and the retention sweep fire once per deployment.
    """
    owner = worker.age == 1
    os.environ['SCHEDULER_WORKER'] = 'true' if owner else 'false'

    if owner:
        logger.info(f"Worker PID {worker.pid}: owns the backup scheduler")
    else:
        logger.info(f"Worker PID {worker.pid}: HTTP only (scheduler disabled)")
