"""
APScheduler configuration and job scheduling for Hostvault.

Manages:
- Scheduled backup runs per domain (based on each domain's cron expression)
- Daily retention policy enforcement
- Daily health check
- Schedule presence probes used by the health check
"""

import logging
import shutil
import subprocess
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from hostvault import db
from hostvault.settings import get_settings

logger = logging.getLogger(__name__)

JOBSTORE_TABLE = 'apscheduler_jobs'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def _count_jobs_in_database() -> int:
    """
    Count jobs in APScheduler's persistent job store.

    Returns:
        Number of jobs in database, or 0 if the job store doesn't exist yet
    """
    try:
        result = db.session.execute(
            text(f"SELECT COUNT(*) FROM {JOBSTORE_TABLE}")
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
    tz = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

    # Configure job stores and executors
    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'], tablename=JOBSTORE_TABLE)
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    # Create scheduler
    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=tz
    )

    scheduler.add_job(
        func=_retention_wrapper,
        trigger=CronTrigger.from_crontab(app.config['RETENTION_CRON'], timezone=tz),
        id='retention_cleanup',
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    scheduler.add_job(
        func=_health_check_wrapper,
        trigger=CronTrigger.from_crontab(app.config['HEALTH_CHECK_CRON'], timezone=tz),
        id='health_check',
        name='Daily Health Check',
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
    logger.info(f"APScheduler started successfully (state={scheduler.state}, running={scheduler.running})")

    jobs = scheduler.get_jobs()
    if jobs:
        logger.info(f"Loaded {len(jobs)} scheduled jobs:")
        for job in jobs:
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info("No scheduled jobs loaded")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def sync_backup_jobs(settings):
    """
    Synchronize domain backup jobs with the configured domains.

    Domains with a cron expression get a ``backup_<domain>`` job; backup jobs
    of domains that are no longer configured (or no longer scheduled) are removed.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    tz = flask_app.config.get('SCHEDULER_TIMEZONE', 'UTC') if flask_app else 'UTC'
    scheduled_job_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('backup_')}

    for domain in settings.domains:
        job_id = domain.schedule_job_id
        scheduled_job_ids.discard(job_id)

        if not domain.schedule_cron:
            if scheduler.get_job(job_id):
                scheduler.remove_job(job_id)
                logger.info(f"Removed scheduled backup job: {job_id}")
            continue

        try:
            trigger = CronTrigger.from_crontab(domain.schedule_cron, timezone=tz)
        except ValueError as e:
            logger.error(f"Invalid cron expression for {domain.name} ({domain.schedule_cron}): {e}")
            continue

        scheduler.add_job(
            func=_execute_backup_wrapper,
            args=[domain.name],
            trigger=trigger,
            id=job_id,
            name=f"Backup: {domain.name}",
            replace_existing=True
        )
        logger.info(f"Scheduled backup job: {domain.name} ({domain.schedule_cron})")

    # Remove any leftover jobs of domains that are no longer configured
    for leftover_id in scheduled_job_ids:
        scheduler.remove_job(leftover_id)
        logger.info(f"Removed orphaned scheduled job: {leftover_id}")


def _execute_backup_wrapper(domain_name: str):
    """
    Wrapper function for executing domain backups in scheduler context.

    Args:
        domain_name: Domain to back up
    """
    from hostvault.backup.executor import execute_domain_backup

    # Execute within app context using stored Flask app reference
    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing backup of {domain_name}")
            report = execute_domain_backup(get_settings(flask_app), domain_name)
            logger.info(f"Backup of {domain_name} completed with status: {report.status.value}")
        except Exception:
            logger.exception(f"Scheduled backup of {domain_name} failed")


def _retention_wrapper():
    from hostvault.backup.retention import enforce_retention_policies

    with flask_app.app_context():
        try:
            enforce_retention_policies(get_settings(flask_app))
        except Exception:
            logger.exception("Scheduled retention cleanup failed")


def _health_check_wrapper():
    from hostvault.backup.health import execute_health_check

    with flask_app.app_context():
        try:
            report = execute_health_check(get_settings(flask_app))
            logger.info(f"Health check completed: {report.overall.value}")
        except Exception:
            logger.exception("Scheduled health check failed")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Reads the live scheduler when this process runs it, otherwise the
    persistent job store.

    Returns:
        List of dicts with job information
    """
    if scheduler is not None:
        return [
            {
                'id': job.id,
                'name': job.name,
                'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                'trigger': str(job.trigger)
            }
            for job in scheduler.get_jobs()
        ]

    try:
        rows = db.session.execute(
            text(f"SELECT id, next_run_time FROM {JOBSTORE_TABLE} ORDER BY next_run_time")
        ).fetchall()
    except SQLAlchemyError:
        db.session.rollback()
        return []

    return [
        {
            'id': row[0],
            'name': None,
            'next_run': (
                datetime.fromtimestamp(row[1], tz=timezone.utc).isoformat()
                if row[1] is not None else None
            ),
            'trigger': None
        }
        for row in rows
    ]


def is_scheduler_running() -> bool:
    """
    Check if scheduler is running.

    Falls back to the job store when this process doesn't own the scheduler
    (other gunicorn workers, the CLI).
    """
    if scheduler is not None and scheduler.running:
        return True

    return _count_jobs_in_database() > 0


class JobStoreScheduleProbe:
    """Checks for a domain's ``backup_<domain>`` job in the persistent job store."""

    def is_scheduled(self, domain) -> Optional[bool]:
        try:
            row = db.session.execute(
                text(f"SELECT 1 FROM {JOBSTORE_TABLE} WHERE id = :job_id"),
                {'job_id': domain.schedule_job_id}
            ).first()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.warning(f"Cannot read scheduler job store: {e}")
            return False
        return row is not None


class CrontabScheduleProbe:
    """
    Checks the invoking user's crontab for a line that backs up the domain.

    A line matches when it is not a comment and mentions the domain name or
    its artifact prefix.
    """

    def __init__(self, command=('crontab', '-l'), timeout: int = 10):
        self.command = list(command)
        self.timeout = timeout
        self._entries = None

    def _read_entries(self) -> Optional[list]:
        if self._entries is not None:
            return self._entries

        if shutil.which(self.command[0]) is None:
            logger.warning(f"'{self.command[0]}' not available, cannot check schedule")
            return None

        try:
            result = subprocess.run(
                self.command, capture_output=True, text=True, timeout=self.timeout
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.warning(f"Failed to read crontab: {e}")
            return None

        # "no crontab for <user>" exits non-zero: there simply is no schedule
        lines = result.stdout.splitlines() if result.returncode == 0 else []
        self._entries = [
            line.strip() for line in lines
            if line.strip() and not line.strip().startswith('#')
        ]
        return self._entries

    def is_scheduled(self, domain) -> Optional[bool]:
        entries = self._read_entries()
        if entries is None:
            return None
        markers = (domain.name, domain.prefix)
        return any(marker in entry for entry in entries for marker in markers)


def get_schedule_probe(settings):
    """Return the schedule probe selected by the settings, or None when disabled."""
    if settings.schedule_source == 'apscheduler':
        return JobStoreScheduleProbe()
    if settings.schedule_source == 'crontab':
        return CrontabScheduleProbe()
    return None
