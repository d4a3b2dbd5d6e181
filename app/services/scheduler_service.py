# app/services/scheduler_service.py
import os
import importlib
import logging
from datetime import datetime

import pytz
from apscheduler.triggers.cron import CronTrigger
from flask import current_app

from app.models import JobConfig
from app import db, scheduler
from .db_repositories import ApiConfigRepository, SyncLogRepository

logger = logging.getLogger(__name__)

DISPATCHED_JOB_PREFIX = 'sync_wholesaler_'


def _acquire_lock(job_id):
    """Flags the job as running unless it already is. Returns False when another run holds it."""
    claimed = JobConfig.query.filter_by(job_id=job_id, is_running=False).update(
        {JobConfig.is_running: True, JobConfig.cancellation_requested: False}, synchronize_session=False
    )
    db.session.commit()
    return claimed == 1


def _release_lock(job_id):
    JobConfig.query.filter_by(job_id=job_id).update({JobConfig.is_running: False}, synchronize_session=False)
    db.session.commit()


def job_wrapper(job_id, job_path_str, app=None):
    """
    Entry point for every scheduled job: creates an application context,
    holds the job's running flag while it executes and always releases it.

    The lock is per job. The dispatcher and the stuck-run sweep may overlap,
    while a second copy of the same job is skipped.
    """
    app = app or scheduler.app
    with app.app_context():
        if not _acquire_lock(job_id):
            logger.warning(f"Skipping run of '{job_id}': the previous run is still in progress.")
            return

        logger.info(f"Lock acquired for job '{job_id}'. Context created for: {job_path_str}")
        try:
            module_path, func_name = job_path_str.rsplit(':', 1)
            module = importlib.import_module(module_path)
            job_func = getattr(module, func_name)
            job_func()
            logger.info(f"Scheduled job '{job_path_str}' finished successfully.")
        except Exception as e:
            logger.error(f"Exception during execution of job '{job_path_str}': {e}", exc_info=True)
        finally:
            db.session.rollback()
            _release_lock(job_id)
            logger.info(f"Lock released for job: {job_id}")


def is_cron_due(expression, minute_start, timezone):
    """True when a 5-field cron expression fires exactly at minute_start (an aware datetime)."""
    trigger = CronTrigger.from_crontab(expression, timezone=timezone)
    return trigger.get_next_fire_time(None, minute_start) == minute_start


def current_minute(tz_name, now=None):
    tz = pytz.timezone(tz_name)
    now = now or datetime.now(tz)
    if now.tzinfo is None:
        now = tz.localize(now)
    return now.astimezone(tz).replace(second=0, microsecond=0)


def find_due_syncs(now=None):
    """
    Evaluates every sync-enabled wholesaler's schedules for the current minute.
    Returns (wholesaler_id, sync_type) pairs; a due full sync wins over an incremental one.
    """
    tz_name = current_app.config['APP_TIMEZONE']
    minute_start = current_minute(tz_name, now)
    due = []
    for api_config in ApiConfigRepository.sync_enabled_configs():
        for sync_type, expression in (('full', api_config.schedule_full), ('incremental', api_config.schedule_incremental)):
            if not expression:
                continue
            try:
                is_due = is_cron_due(expression, minute_start, tz_name)
            except ValueError as e:
                logger.error(f"Invalid {sync_type} schedule '{expression}' for wholesaler {api_config.wholesaler_id}: {e}")
                continue
            if is_due:
                due.append((api_config.wholesaler_id, sync_type))
                break
    return due


def run_wholesaler_sync(wholesaler_id, sync_type='incremental', app=None):
    """Runs one wholesaler's sync inside an application context. Used as a one-off scheduler job."""
    from .sync_service import SyncService, SyncAlreadyRunningError

    app = app or scheduler.app
    with app.app_context():
        try:
            sync_log = SyncService().run(wholesaler_id, sync_type, record_limit=app.config.get('JOB_RECORD_LIMIT'))
            logger.info(f"Wholesaler {wholesaler_id} {sync_type} sync finished: {sync_log.status}")
            return sync_log.sync_id
        except SyncAlreadyRunningError as e:
            logger.warning(str(e))
            return None


def dispatch_sync(wholesaler_id, sync_type='incremental'):
    """
    Hands a wholesaler's run to the scheduler's worker pool so wholesalers run
    side by side. Without a running scheduler (CLI, tests) it runs inline.
    """
    running = [log for log in SyncLogRepository.running_for(wholesaler_id) if not log.is_stuck()]
    if running:
        logger.info(f"Not dispatching {sync_type} sync for wholesaler {wholesaler_id}: {running[0].sync_id} is still running.")
        return False

    if scheduler.running:
        scheduler.add_job(
            id=f"{DISPATCHED_JOB_PREFIX}{wholesaler_id}",
            func=run_wholesaler_sync,
            args=[wholesaler_id, sync_type],
            trigger='date',
            name=f"Sync wholesaler {wholesaler_id} ({sync_type})",
            replace_existing=True,
        )
        logger.info(f"Dispatched {sync_type} sync for wholesaler {wholesaler_id} to the scheduler.")
    else:
        run_wholesaler_sync(wholesaler_id, sync_type, app=current_app._get_current_object())
    return True


def load_and_schedule_jobs(app, scheduler):
    """
    Discovers jobs from the filesystem, syncs their configuration with the database,
    and schedules them with the locking wrapper.
    """
    jobs_dir = os.path.join(app.root_path, 'jobs')
    logger.info(f"Searching for jobs in: {jobs_dir}")

    discovered_jobs = []
    for filename in sorted(os.listdir(jobs_dir)):
        if filename.endswith('_job.py') and not filename.startswith('__'):
            module_name = f"app.jobs.{filename[:-3]}"
            try:
                module = importlib.import_module(module_name)
                if hasattr(module, 'JOB_CONFIG'):
                    discovered_jobs.append(module.JOB_CONFIG)
                else:
                    logger.warning(f"Skipping job from {module_name}: JOB_CONFIG not found.")
            except Exception as e:
                logger.error(f"Failed to load job from {module_name}: {e}", exc_info=True)

    with app.app_context():
        # Flags left behind by a process that died mid-run.
        logger.info("Resetting all 'is_running' flags on scheduler startup.")
        JobConfig.query.update({JobConfig.is_running: False, JobConfig.cancellation_requested: False})
        db.session.commit()

        scheduled_job_ids = {job.id for job in scheduler.get_jobs()}
        db_job_configs = {config.job_id: config for config in JobConfig.query.all()}
        discovered_job_ids = set()

        for job_file_config in discovered_jobs:
            job_id = job_file_config.get('id')
            if not job_id:
                continue

            discovered_job_ids.add(job_id)
            job_db_config = db_job_configs.get(job_id)

            if not job_db_config:
                logger.info(f"New job '{job_id}' discovered. Seeding configuration to database.")
                trigger_args = {k: v for k, v in job_file_config.items() if k in ['hour', 'minute', 'day_of_week', 'day', 'month']}
                job_db_config = JobConfig(
                    job_id=job_id,
                    name=job_file_config.get('name', job_id),
                    is_enabled=True,
                    trigger_type='cron',
                    trigger_args=trigger_args
                )
                db.session.add(job_db_config)
                db.session.commit()

            if job_db_config.is_enabled:
                logger.info(f"Scheduling job '{job_db_config.name}' with {job_db_config.trigger_args}.")
                scheduler.add_job(
                    id=job_db_config.job_id,
                    func=job_wrapper,
                    args=[job_db_config.job_id, job_file_config['func']],
                    trigger=CronTrigger(timezone=app.config['APP_TIMEZONE'], **job_db_config.trigger_args),
                    name=job_db_config.name,
                    replace_existing=True,
                    max_instances=1,
                    coalesce=True,
                )
            elif scheduler.get_job(job_db_config.job_id):
                scheduler.remove_job(job_db_config.job_id)
                logger.info(f"Removed disabled job '{job_db_config.name}' from scheduler.")
            else:
                logger.info(f"Job '{job_db_config.name}' is disabled. Not scheduling.")

        orphaned = {job_id for job_id in scheduled_job_ids - discovered_job_ids if not job_id.startswith(DISPATCHED_JOB_PREFIX)}
        for job_id in orphaned:
            if scheduler.get_job(job_id):
                scheduler.remove_job(job_id)
                logger.warning(f"Removed orphaned job '{job_id}' from scheduler as it's no longer discovered.")
