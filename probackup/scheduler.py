"""
APScheduler configuration and job scheduling for ProBackup.

Manages:
- Scheduled backups per type (cron expression, or frequency + time)
- Daily retention policy enforcement
"""

import logging
from typing import Any, Dict, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from probackup.backup.models import BackupRequest


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

DEFAULT_SCHEDULES = {
    'database': {'frequency': 'daily', 'time': '02:00'},
    'filesystem': {'frequency': 'weekly', 'time': '03:00'},
}


def get_cron_expression(settings: Optional[Dict[str, Any]] = None, backup_type: Optional[str] = None) -> str:
    """
    Build a crontab expression from schedule settings.

    A 'cron_expression' setting wins. Otherwise 'frequency' (daily, weekly,
    monthly) and 'time' (HH:MM) are combined; weekly runs on Sunday and
    monthly on the first day of the month.

    Args:
        settings: Schedule settings for one backup type
        backup_type: Type whose defaults fill in missing settings

    Returns:
        Five-field crontab expression

    Raises:
        ValueError: If frequency or time is invalid
    """
    settings = dict(DEFAULT_SCHEDULES.get(backup_type, DEFAULT_SCHEDULES['database']), **(settings or {}))

    if settings.get('cron_expression'):
        return settings['cron_expression']

    try:
        hour, minute = (int(part) for part in str(settings.get('time') or '02:00').split(':', 1))
    except ValueError:
        raise ValueError(f"Invalid schedule time: {settings.get('time')!r} (expected HH:MM)")
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Invalid schedule time: {settings.get('time')!r}")

    frequency = settings.get('frequency') or 'daily'
    if frequency == 'daily':
        return f"{minute} {hour} * * *"
    if frequency == 'weekly':
        return f"{minute} {hour} * * 0"
    if frequency == 'monthly':
        return f"{minute} {hour} 1 * *"
    raise ValueError(f"Invalid schedule frequency: {frequency}. Valid options: ['daily', 'weekly', 'monthly']")


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

    for backup_type, settings in (app.config.get('SCHEDULE') or {}).items():
        if not settings or not settings.get('enabled', True):
            logger.info(f"Scheduled {backup_type} backups disabled")
            continue
        try:
            cron = get_cron_expression(settings, backup_type)
            scheduler.add_job(
                func=run_scheduled_backup,
                args=[backup_type],
                trigger=CronTrigger.from_crontab(cron, timezone='UTC'),
                id=f"backup_{backup_type}",
                name=f"Backup: {backup_type}",
                replace_existing=True
            )
            logger.info(f"Scheduled {backup_type} backup ({cron})")
        except ValueError as e:
            logger.error(f"Failed to schedule {backup_type} backup: {e}")

    scheduler.add_job(
        func=run_scheduled_retention,
        trigger=CronTrigger.from_crontab(app.config.get('RETENTION_CRON') or '30 4 * * *', timezone='UTC'),
        id='retention_cleanup',
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after the Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def run_scheduled_backup(backup_type: str):
    """
    Run one backup of the given type on behalf of the scheduler.

    Failures are logged; nothing propagates into the scheduler thread.
    """
    with flask_app.app_context():
        manager = flask_app.extensions['probackup']
        settings = (flask_app.config.get('SCHEDULE') or {}).get(backup_type) or {}
        request = BackupRequest(
            type=backup_type,
            name=settings.get('name') or f"scheduled_{backup_type}",
            storage=settings.get('storage'),
            compression=settings.get('compression', 'gzip'),
            options=dict(settings.get('options') or {}),
            exclusions=list(settings.get('exclusions') or []),
            connection_name=settings.get('connection'),
        )

        logger.info(f"Scheduler executing {backup_type} backup")
        outcome = manager.backup(request)
        if outcome.success:
            logger.info(f"Scheduled {backup_type} backup completed: {outcome.file_path}")
        else:
            logger.error(f"Scheduled {backup_type} backup failed: {outcome.error}")
        return outcome


def run_scheduled_retention():
    """Apply retention to every type on behalf of the scheduler."""
    with flask_app.app_context():
        manager = flask_app.extensions['probackup']
        try:
            report = manager.apply_retention()
        except Exception:
            logger.exception("Scheduled retention run failed")
            return None
        logger.info(f"Scheduled retention deleted {report.deleted} backup(s)")
        return report


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
    """Check if the scheduler is running in this process."""
    return scheduler is not None and bool(scheduler.running)
