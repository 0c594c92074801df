"""
APScheduler configuration and job scheduling for vwbackup.

Manages:
- One cron backup job per tier (backup_<tier>)
- One cron verification job per tier (verify_<tier>)
- Manual tier triggers
- Tier staleness (time since the last successful run vs. the tier cadence)
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError

from vwbackup import db, get_backup_context
from vwbackup.backup.errors import BackupError, AlreadyRunning, ConfigurationError
from vwbackup.backup.locks import get_tier_states
from vwbackup.backup.tiers import BackupTier
from vwbackup.models import RunRecord

logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

# Set on shutdown; in-flight uploads check it between parts
cancel_event = threading.Event()


def count_persisted_jobs() -> int:
    """
    Count jobs in APScheduler's persistent job store.

    Rows outlive the scheduler that wrote them, so a non-zero count only
    means jobs are configured, not that any process is running them.

    Returns:
        Number of jobs in database, or 0 if the job table does not exist
    """
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError
    try:
        result = db.session.execute(
            text("SELECT COUNT(*) FROM apscheduler_jobs")
        ).scalar()
        return result or 0
    except SQLAlchemyError:
        db.session.rollback()
        return 0


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
    cancel_event.clear()

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    # One worker per tier plus verification; per-tier exclusion is done by TierLock
    executors = {
        'default': ThreadPoolExecutor(max_workers=len(BackupTier) + 1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': app.config.get('SCHEDULER_MISFIRE_GRACE_TIME', 300)
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        jobs = scheduler.get_jobs()
        for job in jobs:
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler(wait: bool = True):
    """
    Stop the APScheduler.

    Sets the cancel event first so in-flight uploads abort and clean up their
    partial objects, then waits for running jobs to finish.
    """
    global scheduler

    cancel_event.set()
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=wait)
        logger.info("APScheduler stopped")
    scheduler = None


def sync_backup_jobs():
    """
    Synchronize tier jobs from the backup settings to the scheduler.

    Adds or reschedules backup_<tier> and verify_<tier> jobs, and removes
    leftover manual and unknown jobs from the persistent job store.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    settings = get_backup_context(flask_app).settings
    wanted = {}

    for tier in BackupTier:
        wanted[f"backup_{tier.value}"] = (_run_tier_wrapper, tier, settings.schedules[tier], f"Backup: {tier.value}")
        if settings.verify_schedule:
            wanted[f"verify_{tier.value}"] = (
                _verify_tier_wrapper, tier, settings.verify_schedule, f"Verify: {tier.value}"
            )

    for job in scheduler.get_jobs():
        if job.id not in wanted:
            _remove_scheduled_job(job.id)

    for job_id, (func, tier, cron, name) in wanted.items():
        # Settings were validated at startup; an invalid crontab is a configuration error
        try:
            trigger = CronTrigger.from_crontab(cron, timezone='UTC')
        except ValueError as e:
            raise ConfigurationError(f"Invalid schedule for {job_id}: {cron!r}", detail=str(e))

        scheduler.add_job(
            func=func,
            args=[tier.value],
            trigger=trigger,
            id=job_id,
            name=name,
            replace_existing=True
        )
        logger.info(f"Scheduled {name} ({cron})")


def _remove_scheduled_job(job_id: str):
    try:
        scheduler.remove_job(job_id)
        logger.info(f"Removed scheduled job: {job_id}")
    except JobLookupError:
        logger.debug(f"Job already removed: {job_id}")


def _run_tier_wrapper(tier_value: str, trigger: str = 'scheduled'):
    """
    Wrapper for executing a tier backup in scheduler context.

    A failed run is recorded by the executor; this wrapper only makes sure
    nothing propagates into the scheduler thread. Failed tiers are not
    retried before their next natural cadence.
    """
    from vwbackup.backup.executor import execute_backup

    with flask_app.app_context():
        try:
            record = execute_backup(get_backup_context(), tier_value, trigger=trigger, cancel_event=cancel_event)
            logger.info(f"Scheduled {tier_value} backup finished: {record.outcome}")
        except AlreadyRunning as e:
            logger.warning(e.message)
        except BackupError as e:
            logger.error(f"Scheduled {tier_value} backup could not start [{e.kind}]: {e.message}")


def _verify_tier_wrapper(tier_value: str):
    """Wrapper for running a tier verification in scheduler context."""
    from vwbackup.backup.executor import execute_verification

    with flask_app.app_context():
        try:
            result = execute_verification(get_backup_context(), tier_value)
            if result.ok:
                logger.info(f"Verification of {tier_value} passed: {result.remote_key}")
            else:
                logger.error(f"Verification of {tier_value} failed: {result.reason}")
        except BackupError as e:
            logger.error(f"Verification of {tier_value} could not start [{e.kind}]: {e.message}")


def trigger_backup_now(tier) -> str:
    """
    Manually trigger a tier backup through the scheduler.

    Returns:
        The one-time job id

    Raises:
        RuntimeError: If the scheduler is not running in this process
        ConfigurationError: If tier is unknown
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    tier = BackupTier.parse(tier)
    now = datetime.now(timezone.utc)
    job_id = f"manual_{tier.value}_{int(now.timestamp())}"

    # One second delay avoids racing the scheduler's wakeup
    scheduler.add_job(
        func=_run_tier_wrapper,
        args=[tier.value, 'manual'],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name=f"Manual: {tier.value}",
        replace_existing=False
    )

    logger.info(f"Manually triggered {tier.value} backup")
    return job_id


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]


def is_scheduler_running() -> bool:
    """Check if the scheduler is running in this process."""
    return scheduler is not None and bool(scheduler.running)


def cadence_of(cron: str, now: datetime = None) -> timedelta:
    """
    Interval between the next two fire times of a crontab expression.

    Raises:
        ConfigurationError: If the expression is invalid
    """
    try:
        trigger = CronTrigger.from_crontab(cron, timezone='UTC')
    except ValueError as e:
        raise ConfigurationError(f"Invalid schedule: {cron!r}", detail=str(e))

    now = now or datetime.now(timezone.utc)
    first = trigger.get_next_fire_time(None, now)
    second = trigger.get_next_fire_time(first, first + timedelta(seconds=1))
    return second - first


def get_tier_status(settings, now: datetime = None) -> list:
    """
    Per-tier freshness report.

    A tier is stale when it has no successful backup, or when its last
    success is older than stale_factor times the tier cadence.

    Returns:
        List of dicts, one per tier
    """
    now = now or datetime.now(timezone.utc)
    naive_now = now.astimezone(timezone.utc).replace(tzinfo=None)
    states = get_tier_states()
    report = []

    for tier in BackupTier:
        cadence = cadence_of(settings.schedules[tier], now)
        threshold = cadence * settings.stale_factor
        last_run = RunRecord.latest(tier.value)
        last_success = RunRecord.last_success(tier.value)
        last_verify = RunRecord.latest(tier.value, operation='verify')

        age = None
        if last_success is not None:
            age = (naive_now - last_success.finished_at).total_seconds()

        report.append({
            'tier': tier.value,
            'state': states[tier.value],
            'schedule': settings.schedules[tier],
            'retention': str(settings.policies[tier]),
            'cadence_seconds': int(cadence.total_seconds()),
            'stale_after_seconds': int(threshold.total_seconds()),
            'last_run': last_run.to_dict() if last_run else None,
            'last_success': last_success.to_dict() if last_success else None,
            'last_verification': last_verify.to_dict() if last_verify else None,
            'seconds_since_success': int(age) if age is not None else None,
            'stale': age is None or age > threshold.total_seconds()
        })

    return report
