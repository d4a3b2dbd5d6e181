# tests/test_cancel_stuck_syncs.py
import logging
import queue
import threading
from datetime import datetime, timedelta

from app.models import SyncLog, Tour
from app.services.stream_logger import QueueHandler, LOG_END, iter_log_queue
from app.services.sync_service import cancel_stuck_syncs, mark_run_failed

NOW = datetime(2099, 1, 15, 12, 0)


def add_run(db, wholesaler_id, sync_id, minutes_since_heartbeat, timeout=30, status='running'):
    heartbeat = NOW - timedelta(minutes=minutes_since_heartbeat)
    sync_log = SyncLog(sync_id=sync_id, wholesaler_id=wholesaler_id, status=status, started_at=heartbeat,
                       last_heartbeat_at=heartbeat, heartbeat_timeout_minutes=timeout)
    db.session.add(sync_log)
    db.session.commit()
    return sync_log


def test_only_runs_past_their_timeout_are_cancelled(db, make_wholesaler):
    stale = add_run(db, make_wholesaler().wholesaler_id, 'sync_stale', 45)
    add_run(db, make_wholesaler().wholesaler_id, 'sync_fresh', 5)
    patient = make_wholesaler().wholesaler_id
    add_run(db, patient, 'sync_patient', 45, timeout=120)
    add_run(db, patient, 'sync_done', 600, status='completed')

    assert cancel_stuck_syncs(now=NOW) == ['sync_stale']
    assert stale.status == 'failed'
    assert stale.cancel_reason == 'Heartbeat timeout after 30 minutes of inactivity'
    assert stale.completed_at == NOW
    assert SyncLog.query.filter_by(status='running').count() == 2


def test_explicit_timeout_overrides_each_run(db, make_wholesaler):
    add_run(db, make_wholesaler().wholesaler_id, 'sync_a', 15)
    add_run(db, make_wholesaler().wholesaler_id, 'sync_b', 45, timeout=120)

    assert sorted(cancel_stuck_syncs(timeout_minutes=10, now=NOW)) == ['sync_a', 'sync_b']
    assert SyncLog.query.filter_by(sync_id='sync_b').one().cancel_reason == 'Heartbeat timeout after 10 minutes of inactivity'


def test_dry_run_changes_nothing(db, make_wholesaler):
    wholesaler_id = make_wholesaler().wholesaler_id
    add_run(db, wholesaler_id, 'sync_stale', 45)

    assert cancel_stuck_syncs(dry_run=True, now=NOW) == ['sync_stale']
    db.session.expire_all()
    assert SyncLog.query.one().status == 'running'


def test_mark_run_failed_sets_duration():
    sync_log = SyncLog(sync_id='sync_x', status='running', started_at=NOW - timedelta(minutes=2))
    mark_run_failed(sync_log, 'gone', NOW)
    assert sync_log.status == 'failed'
    assert sync_log.duration_seconds == 120


def test_cli_cancel_and_recalculate(app, db, make_wholesaler):
    wholesaler_id = make_wholesaler().wholesaler_id
    stale = datetime.utcnow() - timedelta(hours=2)
    db.session.add(SyncLog(sync_id='sync_stale', wholesaler_id=wholesaler_id, status='running', started_at=stale,
                           last_heartbeat_at=stale, heartbeat_timeout_minutes=30))
    db.session.add(Tour(tour_code='NT209901001', title='Kyoto', wholesaler_id=wholesaler_id))
    db.session.commit()
    runner = app.test_cli_runner()

    dry = runner.invoke(args=['cancel-stuck-syncs', '--dry-run'])
    assert 'Would cancel sync_stale' in dry.output

    result = runner.invoke(args=['cancel-stuck-syncs'])
    assert 'Cancelled sync_stale' in result.output
    assert 'No stuck syncs found.' in runner.invoke(args=['cancel-stuck-syncs']).output

    result = runner.invoke(args=['recalculate-aggregates', '--wholesaler', str(wholesaler_id)])
    assert 'Recalculated 1 tours.' in result.output


def test_queue_handler_keeps_only_its_own_thread():
    log_queue = queue.Queue()
    handler = QueueHandler(log_queue)
    logger = logging.getLogger('tests.stream')
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    try:
        logger.info('from the request thread')
        other = threading.Thread(target=lambda: logger.info('from another thread'))
        other.start()
        other.join()
    finally:
        logger.removeHandler(handler)
    log_queue.put(LOG_END)

    lines = list(iter_log_queue(log_queue, threading.current_thread(), timeout=1))
    assert len(lines) == 1
    assert lines[0].endswith('tests.stream - INFO - from the request thread')
