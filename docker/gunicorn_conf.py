# Gunicorn configuration for the vwbackup status API
# Handles scheduler initialization across multiple workers

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:8080')
workers = int(os.environ.get('GUNICORN_WORKERS', 2))
# Tier runs execute in scheduler threads, not in request handlers
timeout = 30
wsgi_app = 'vwbackup:create_app()'


def post_worker_init(worker):
    """
    Called after a worker is initialized.

    Designates the first worker (worker.age == 0) as the scheduler owner.
    Only this worker runs APScheduler, so a tier job never fires twice.
    Per-tier lock files still guard against a manual CLI run at the same time.

    Args:
        worker: Gunicorn worker instance (uses 'age' attribute: 0, 1, 2, ...)
    """
    if worker.age == 0:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): scheduler owner")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): status API only")


def worker_exit(server, worker):
    """Stop the scheduler so in-flight uploads abort and clean up partial objects."""
    from vwbackup.scheduler import stop_scheduler
    stop_scheduler(wait=True)
