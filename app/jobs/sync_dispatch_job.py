# app/jobs/sync_dispatch_job.py
import logging
import time
import json
import traceback

from app.services.scheduler_service import find_due_syncs, dispatch_sync
from app.models import JobLog
from app import db

logger = logging.getLogger(__name__)

JOB_CONFIG = {
    'id': 'dispatch_wholesaler_syncs',
    'func': 'app.jobs.sync_dispatch_job:run_job',
    'trigger': 'cron',
    'minute': '*',
    'name': 'Sync: Dispatch Due Wholesaler Syncs',
}


def run_job():
    job_id = JOB_CONFIG['id']
    start_time = time.time()
    try:
        due = find_due_syncs()
        if not due:
            # Runs every minute; only minutes that dispatch something are logged.
            logger.debug("No wholesaler syncs due this minute.")
            return

        dispatched, skipped = [], []
        for wholesaler_id, sync_type in due:
            if dispatch_sync(wholesaler_id, sync_type):
                dispatched.append({'wholesaler_id': wholesaler_id, 'sync_type': sync_type})
            else:
                skipped.append({'wholesaler_id': wholesaler_id, 'sync_type': sync_type, 'reason': 'already running'})

        message = f"Dispatched {len(dispatched)} sync(s), skipped {len(skipped)}."
        details = {'dispatched': dispatched, 'skipped': skipped}
        db.session.add(JobLog(job_id=job_id, status='SUCCESS', message=message, duration_s=time.time() - start_time,
                              details=json.dumps(details, indent=2, ensure_ascii=False)))
        db.session.commit()
        logger.info(f"Job '{job_id}': {message}")
    except Exception as e:
        db.session.rollback()
        error_message = f"Job '{job_id}' failed with a critical exception: {e}"
        logger.error(error_message, exc_info=True)
        db.session.add(JobLog(job_id=job_id, status='FAILURE', message=error_message, duration_s=time.time() - start_time,
                              details=json.dumps({'error': str(e), 'traceback': traceback.format_exc()}, indent=2)))
        db.session.commit()
