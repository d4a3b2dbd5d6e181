# tests/test_scheduler_service.py
import json
from datetime import datetime, timedelta

import pytz

from app.models import JobConfig, JobLog, SyncLog
from app.services.scheduler_service import (
    is_cron_due, current_minute, find_due_syncs, dispatch_sync, job_wrapper,
)

CANCEL_JOB = 'app.jobs.cancel_stuck_syncs_job:run_job'


def test_is_cron_due():
    minute = pytz.utc.localize(datetime(2030, 1, 1, 3, 0))
    assert is_cron_due('0 3 * * *', minute, 'UTC')
    assert is_cron_due('*/15 * * * *', minute, 'UTC')
    assert not is_cron_due('0 4 * * *', minute, 'UTC')


def test_cron_is_evaluated_in_app_timezone():
    bangkok = pytz.timezone('Asia/Bangkok')
    minute = current_minute('Asia/Bangkok', pytz.utc.localize(datetime(2030, 1, 1, 20, 0, 42)))
    assert minute == bangkok.localize(datetime(2030, 1, 2, 3, 0))
    assert is_cron_due('0 3 * * *', minute, 'Asia/Bangkok')


def test_find_due_syncs_prefers_full(db, make_wholesaler):
    api_config = make_wholesaler(schedule_full='0 3 * * *', schedule_incremental='0 */2 * * *')
    make_wholesaler(sync_enabled=False, schedule_full='0 3 * * *')

    assert find_due_syncs(datetime(2030, 1, 1, 3, 0)) == [(api_config.wholesaler_id, 'full')]
    assert find_due_syncs(datetime(2030, 1, 1, 4, 0)) == [(api_config.wholesaler_id, 'incremental')]
    assert find_due_syncs(datetime(2030, 1, 1, 5, 0)) == []


def test_invalid_schedule_is_skipped(db, make_wholesaler):
    api_config = make_wholesaler(schedule_full='not a cron', schedule_incremental='0 4 * * *')
    assert find_due_syncs(datetime(2030, 1, 1, 4, 0)) == [(api_config.wholesaler_id, 'incremental')]


def test_dispatch_is_refused_while_a_run_is_alive(db, make_wholesaler):
    api_config = make_wholesaler()
    now = datetime.utcnow()
    db.session.add(SyncLog(sync_id='sync_live', wholesaler_id=api_config.wholesaler_id, status='running',
                           started_at=now, last_heartbeat_at=now, heartbeat_timeout_minutes=30))
    db.session.commit()

    assert dispatch_sync(api_config.wholesaler_id, 'incremental') is False


def test_job_wrapper_runs_stuck_sweep_and_releases_lock(app, db, make_wholesaler):
    api_config = make_wholesaler()
    stale = datetime.utcnow() - timedelta(hours=1)
    db.session.add(JobConfig(job_id='cancel_stuck_syncs', name='Cancel stuck', trigger_args={'minute': '*/5'}))
    db.session.add(SyncLog(sync_id='sync_stale', wholesaler_id=api_config.wholesaler_id, status='running',
                           started_at=stale, last_heartbeat_at=stale, heartbeat_timeout_minutes=30))
    db.session.commit()

    job_wrapper('cancel_stuck_syncs', CANCEL_JOB, app=app)
    db.session.expire_all()

    assert SyncLog.query.filter_by(sync_id='sync_stale').one().status == 'failed'
    job_log = JobLog.query.filter_by(job_id='cancel_stuck_syncs').one()
    assert json.loads(job_log.details) == {'cancelled': ['sync_stale']}
    assert JobConfig.query.filter_by(job_id='cancel_stuck_syncs').one().is_running is False


def test_job_wrapper_skips_when_lock_is_held(app, db):
    db.session.add(JobConfig(job_id='cancel_stuck_syncs', name='Cancel stuck', trigger_args={}, is_running=True))
    db.session.commit()

    job_wrapper('cancel_stuck_syncs', CANCEL_JOB, app=app)
    db.session.expire_all()

    assert JobLog.query.count() == 0
    assert JobConfig.query.filter_by(job_id='cancel_stuck_syncs').one().is_running is True
