"""
APScheduler configuration for Stowage.

Manages:
- Scheduled backup creation (BACKUP_SCHEDULE_CRON)
- Daily retention enforcement and storage reconciliation
"""

import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from stowage.backup.errors import BackupError
from stowage.backup.orchestrator import BackupService
from stowage.backup.retention import RetentionManager

logger = logging.getLogger(__name__)


# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

BACKUP_JOB_ID = 'scheduled_backup'
MAINTENANCE_JOB_ID = 'retention_cleanup'


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

    executors = {
        # One worker: backups and maintenance never run concurrently
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    backup_cron = app.config.get('BACKUP_SCHEDULE_CRON')
    if backup_cron:
        scheduler.add_job(
            func=_create_backup_wrapper,
            trigger=CronTrigger.from_crontab(backup_cron, timezone='UTC'),
            id=BACKUP_JOB_ID,
            name='Scheduled Backup',
            replace_existing=True
        )
        logger.info(f"Scheduled backup creation ({backup_cron})")

    # Retention and reconciliation (runs daily at 3 AM UTC)
    scheduler.add_job(
        func=_maintenance_wrapper,
        trigger=CronTrigger(hour=3, minute=0),
        id=MAINTENANCE_JOB_ID,
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

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")

    scheduler = None


def _create_backup_wrapper():
    """
    Create a backup in scheduler context.

    Failures are logged here because nothing else observes a background job.
    """
    with flask_app.app_context():
        try:
            backup = BackupService.from_app(flask_app).create_backup()
            logger.info(f"Scheduled backup created: {backup.name}")
        except BackupError as e:
            logger.error(f"Scheduled backup failed: {e}")


def _maintenance_wrapper():
    """Run retention enforcement and reconciliation in scheduler context."""
    with flask_app.app_context():
        manager = RetentionManager(BackupService.from_app(flask_app))

        summary = manager.enforce_policy()
        for error in summary['errors']:
            logger.error(error)

        try:
            result = manager.reconcile(remove_orphans=False)
            if result['orphaned_objects'] or result['missing_archives']:
                logger.warning(
                    f"Reconciliation found {len(result['orphaned_objects'])} orphaned objects "
                    f"and {len(result['missing_archives'])} missing archives"
                )
        except BackupError as e:
            logger.error(f"Reconciliation failed: {e}")


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
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
