# app/jobs/cancel_stuck_syncs_job.py
import logging
import time
import json

from app.services.sync_service import cancel_stuck_syncs
from app.models import JobLog
from app import db

logger = logging.getLogger(__name__)

JOB_CONFIG = {
    'id': 'cancel_stuck_syncs',
    'func': 'app.jobs.cancel_stuck_syncs_job:run_job',
    'trigger': 'cron',
    'minute': '*/5',
    'name': 'Maintenance: Cancel Stuck Syncs',
}


def run_job():
    job_id = JOB_CONFIG['id']
    start_time = time.time()
    cancelled = cancel_stuck_syncs()
    if cancelled:
        message = f"Cancelled {len(cancelled)} stuck sync(s)."
        logger.warning(f"Job '{job_id}': {message}")
    else:
        message = "No stuck syncs found."
    db.session.add(JobLog(job_id=job_id, status='SUCCESS', message=message, duration_s=time.time() - start_time,
                          details=json.dumps({'cancelled': cancelled})))
    db.session.commit()
