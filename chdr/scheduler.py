"""
APScheduler configuration for ch-dr service mode.

Manages:
- Scheduled backups (cron expression from configuration)
- Daily retention policy enforcement
- One-off backup on start
"""

import logging
import threading
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from chdr.backup.catalog import Catalog
from chdr.backup.compression import CompressionError
from chdr.backup.engine import BackupError, RunCancelled, run_backup
from chdr.backup.retention import enforce_retention_policy
from chdr.backup.storage import LocalStorage, StorageError, create_s3_storage
from chdr.backup.targets import ExecutorError

logger = logging.getLogger(__name__)

# Global scheduler instance and the run settings its jobs use
scheduler = None
service_config = None
service_target = None
cancel_event = threading.Event()


def init_scheduler(config, target):
    """
    Initialize and configure APScheduler.

    Args:
        config: Config instance
        target: ExecutionTarget scheduled backups run against
    """
    global scheduler, service_config, service_target

    if scheduler is not None:
        return scheduler

    service_config = config
    service_target = target
    cancel_event.clear()

    executors = {
        'default': ThreadPoolExecutor(max_workers=2)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one backup at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    if config.schedule:
        scheduler.add_job(
            func=_execute_backup_wrapper,
            trigger=CronTrigger.from_crontab(config.schedule, timezone='UTC'),
            id='scheduled_backup',
            name='Scheduled Backup',
            replace_existing=True
        )
        logger.info(f"Scheduled backups: {config.schedule}")
    else:
        logger.info("No backup schedule configured")

    # Add retention policy job (runs daily at 2 AM UTC)
    scheduler.add_job(
        func=_enforce_retention_wrapper,
        trigger=CronTrigger(hour=2, minute=0, timezone='UTC'),
        id='retention_cleanup',
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """Start the APScheduler."""
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler, cancelling a backup in progress."""
    global scheduler

    cancel_event.set()

    if scheduler is not None:
        if scheduler.running:
            scheduler.shutdown()
            logger.info("APScheduler stopped")
        scheduler = None


def _execute_backup_wrapper():
    """Run one backup in scheduler context; failures are logged, never raised."""
    logger.info("Scheduler starting backup")

    try:
        manifest = run_backup(service_config, service_target, cancel_event=cancel_event)
    except RunCancelled:
        logger.warning("Scheduled backup cancelled")
        return
    except (ExecutorError, BackupError, CompressionError, StorageError) as e:
        logger.error(f"Scheduled backup failed: {e}")
        return

    if manifest.has_failures:
        logger.warning(
            f"Scheduled backup completed with {len(manifest.failures)} failure(s): {manifest.archive_path}"
        )
    else:
        logger.info(f"Scheduled backup completed: {manifest.archive_path}")


def _enforce_retention_wrapper():
    try:
        catalog = Catalog(
            LocalStorage(service_config.backup_dir),
            create_s3_storage(service_config),
            service_config.s3_path
        )
        summary = enforce_retention_policy(catalog, service_config.retention_days)
    except StorageError as e:
        logger.error(f"Retention cleanup failed: {e}")
        return

    logger.info(
        f"Retention cleanup: local deleted {summary['local_deleted']}, "
        f"S3 deleted {summary['remote_deleted']}, errors {len(summary['errors'])}"
    )


def trigger_backup_now():
    """
    Trigger a backup immediately.

    Raises:
        RuntimeError: If the scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # 1 second delay to avoid racing scheduler start-up
    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{int(now.timestamp())}",
        name='Manual Backup',
        replace_existing=False
    )

    logger.info("Manually triggered backup")


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
    return scheduler is not None and scheduler.running


def get_scheduler_diagnostics() -> dict:
    """
    Get scheduler diagnostics for the status endpoint.

    Returns:
        Dict with scheduler state and jobs
    """
    if scheduler is None:
        return {
            'initialized': False,
            'running': False,
            'state': 'NOT_INITIALIZED'
        }

    jobs = get_scheduled_jobs()
    return {
        'initialized': True,
        'running': scheduler.running,
        'state': str(scheduler.state),
        'job_count': len(jobs),
        'jobs': jobs
    }
