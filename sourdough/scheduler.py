"""
APScheduler configuration for Sourdough.

Manages:
- The scheduled backup job (daily, weekly or monthly from backup settings)
- Daily retention sweep across all enabled destinations
"""

import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from sourdough.backup.config import ScheduleConfig

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'scheduled_backup'
RETENTION_JOB_ID = 'retention_cleanup'

# Day-of-week settings count from Sunday = 0
WEEKDAYS = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat')

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


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

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=2)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,
        'misfire_grace_time': 300
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    # Retention sweep runs daily at 2 AM UTC
    scheduler.add_job(
        func=run_retention_cleanup,
        trigger=CronTrigger(hour=2, minute=0, timezone='UTC'),
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
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _parse_time(value: str):
    try:
        hour, minute = (int(part) for part in str(value).split(':', 1))
        if 0 <= hour < 24 and 0 <= minute < 60:
            return hour, minute
    except ValueError:
        pass
    logger.warning(f"Invalid backup schedule time '{value}', using 02:00")
    return 2, 0


def build_backup_trigger(schedule: ScheduleConfig, timezone: str = 'UTC') -> CronTrigger:
    """
    Translate backup schedule settings into a cron trigger.

    Args:
        schedule: Schedule settings (frequency, time, day of week/month)
        timezone: Timezone the schedule time is expressed in

    Returns:
        CronTrigger for the scheduled backup job
    """
    hour, minute = _parse_time(schedule.time)

    if schedule.frequency == 'weekly':
        day_of_week = WEEKDAYS[schedule.day_of_week % 7]
        return CronTrigger(day_of_week=day_of_week, hour=hour, minute=minute, timezone=timezone)

    if schedule.frequency == 'monthly':
        day = min(max(schedule.day_of_month, 1), 31)
        return CronTrigger(day=day, hour=hour, minute=minute, timezone=timezone)

    return CronTrigger(hour=hour, minute=minute, timezone=timezone)


def sync_backup_schedule():
    """
    Synchronize the scheduled backup job with the backup settings.

    Must run inside an application context. Call after startup and
    whenever schedule settings change.
    """
    from sourdough.backup.config import load_backup_config

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    schedule = load_backup_config(flask_app).schedule
    existing = scheduler.get_job(BACKUP_JOB_ID)

    if not schedule.enabled:
        if existing:
            scheduler.remove_job(BACKUP_JOB_ID)
            logger.info("Removed scheduled backup job (schedule disabled)")
        return None

    trigger = build_backup_trigger(schedule, flask_app.config.get('SCHEDULER_TIMEZONE', 'UTC'))
    scheduler.add_job(
        func=run_scheduled_backup,
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name=f"Scheduled backup ({schedule.frequency} at {schedule.time})",
        replace_existing=True
    )
    logger.info(f"Scheduled backup: {schedule.frequency} at {schedule.time} "
                f"to {', '.join(schedule.destinations)}")
    return trigger


def run_scheduled_backup():
    """
    Scheduler entry point for the backup job.

    Runs inside an app context using the stored Flask app reference.
    Failures are logged; the scheduler keeps running.
    """
    from sourdough.backup import BackupService, BackupError, load_backup_config

    with flask_app.app_context():
        try:
            config = load_backup_config(flask_app)
            schedule = config.schedule
            with BackupService(config) as service:
                result = service.create(
                    include_database=schedule.include_database,
                    include_files=schedule.include_files,
                    include_settings=schedule.include_settings,
                    destinations=schedule.destinations,
                )
            logger.info(f"Scheduled backup completed: {result['filename']} ({result['size']} bytes)")
            for failure in result['failures']:
                logger.warning(f"Scheduled backup upload to {failure['destination']} failed: {failure['error']}")
            return result
        except BackupError as e:
            logger.error(f"Scheduled backup failed ({e.kind.value}): {e}")
        except Exception as e:
            logger.exception(f"Scheduled backup failed: {e}")
        return None


def run_retention_cleanup():
    """Scheduler entry point for the daily retention sweep."""
    from sourdough.backup import BackupService, BackupError, load_backup_config

    with flask_app.app_context():
        try:
            with BackupService(load_backup_config(flask_app)) as service:
                summary = service.apply_retention()
            deleted = sum(len(r['deleted']) for r in summary['results'])
            logger.info(f"Retention cleanup complete: {deleted} archive(s) deleted")
            return summary
        except BackupError as e:
            logger.error(f"Retention cleanup failed ({e.kind.value}): {e}")
        except Exception as e:
            logger.exception(f"Retention cleanup failed: {e}")
        return None


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
