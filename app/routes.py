# app/routes.py
import logging
import queue
from threading import Thread

from flask import Blueprint, request, Response, stream_with_context, current_app, jsonify, url_for
from apscheduler.triggers.cron import CronTrigger

from . import db, scheduler, format_datetime, relative_time
from .models import JobLog, JobConfig, SyncLog, SyncErrorLog, SyncCursor, Tour, Period, Wholesaler
from .services import mapping_service
from .services.aggregation_service import AggregationService
from .services.canonical_fields import TOUR_FIELDS, coerce
from .services.db_repositories import ApiConfigRepository, SyncLogRepository
from .services.scheduler_service import load_and_schedule_jobs, dispatch_sync
from .services.search_service import UnifiedSearchService
from .services.settings_service import SettingsProvider
from .services.stream_logger import QueueHandler, LOG_END, iter_log_queue
from .services.sync_error_handler import TypeCastError
from .services.sync_service import SyncService, SyncAlreadyRunningError, SYNC_TYPES

logger = logging.getLogger(__name__)

main_bp = Blueprint('main', __name__)

PERIOD_EDITABLE_FIELDS = ('capacity', 'booked', 'status')
PERIOD_STATUSES = ('open', 'closed', 'sold_out', 'cancelled')


# --- UTILITY FUNCTIONS ---
def pretty_print_trigger(trigger):
    if not isinstance(trigger, CronTrigger): return str(trigger)
    fields = {f.name: str(f) for f in trigger.fields}
    minute, hour, day_of_week = fields.get('minute', '0').zfill(2), fields.get('hour', '*'), fields.get('day_of_week', '*')
    if minute == '*' and hour == '*': return "Every minute"
    if minute.startswith('*/') and hour == '*': return f"Every {minute[2:]} minutes"
    if hour == '*' and minute == '00': return "Hourly (at top of the hour)"
    if hour != '*' and day_of_week == '*': return f"Daily at {hour.zfill(2)}:{minute}"
    return f"Cron: {minute} {hour} {fields.get('day','*')} {fields.get('month','*')} {day_of_week}"


def _payload():
    return request.get_json(silent=True) or {}


def _recalculate(tour):
    AggregationService(SettingsProvider()).recalculate(tour)


def _sync_log_summary(sync_log):
    data = sync_log.to_dict()
    data['started_at_display'] = format_datetime(sync_log.started_at)
    data['started_relative'] = relative_time(sync_log.started_at)
    data['last_heartbeat_relative'] = relative_time(sync_log.last_heartbeat_at)
    return data


# --- DASHBOARD & JOB CONTROL ROUTES ---
@main_bp.route('/')
@main_bp.route('/jobs')
def index():
    job_states = []
    for config in JobConfig.query.order_by(JobConfig.name).all():
        live_job = scheduler.get_job(config.job_id) if scheduler.running else None
        job_states.append({
            'id': config.job_id, 'name': config.name, 'is_enabled': config.is_enabled,
            'next_run': format_datetime(live_job.next_run_time) if live_job else None,
            'trigger_str': pretty_print_trigger(live_job.trigger) if live_job else "N/A",
            'is_running': config.is_running,
        })
    logs = JobLog.query.order_by(JobLog.timestamp.desc()).limit(15).all()
    return jsonify({
        'jobs': job_states,
        'logs': [{'job_id': l.job_id, 'status': l.status, 'message': l.message, 'duration_s': l.duration_s,
                  'timestamp': relative_time(l.timestamp)} for l in logs],
    })


@main_bp.route('/job/trigger/<job_id>', methods=['POST'])
def trigger_job(job_id):
    job_config = JobConfig.query.filter_by(job_id=job_id).first_or_404()
    if job_config.is_running:
        return jsonify({'error': f"Job '{job_config.name}' is already in progress."}), 409
    return jsonify({'stream_url': url_for('main.stream_log', job_id=job_id)}), 202


@main_bp.route('/job/terminate/<job_id>', methods=['POST'])
def terminate_job(job_id):
    job_config = JobConfig.query.filter_by(job_id=job_id, is_running=True).first()
    if not job_config:
        return jsonify({'error': f"Could not terminate job '{job_id}'. It may have already finished."}), 409
    job_config.cancellation_requested = True
    db.session.commit()
    return jsonify({'message': f"Termination request sent to job '{job_config.name}'."})


@main_bp.route('/job/toggle_enable/<job_id>', methods=['POST'])
def toggle_enable_job(job_id):
    job_config = JobConfig.query.filter_by(job_id=job_id).first_or_404()
    job_config.is_enabled = not job_config.is_enabled
    db.session.commit()
    if scheduler.running:
        load_and_schedule_jobs(current_app, scheduler)
    return jsonify({'job_id': job_id, 'is_enabled': job_config.is_enabled})


@main_bp.route('/job/update_schedule/<job_id>', methods=['POST'])
def update_schedule(job_id):
    job_config = JobConfig.query.filter_by(job_id=job_id).first_or_404()
    parts = (_payload().get('cron_string') or '').split()
    if len(parts) != 5:
        return jsonify({'error': "Invalid Cron format."}), 400
    trigger_args = {'minute': parts[0], 'hour': parts[1], 'day': parts[2], 'month': parts[3], 'day_of_week': parts[4]}
    try:
        CronTrigger(**trigger_args)
    except ValueError as e:
        return jsonify({'error': f"Invalid Cron format: {e}"}), 400
    job_config.trigger_type, job_config.trigger_args = 'cron', trigger_args
    db.session.commit()
    if job_config.is_enabled and scheduler.running:
        load_and_schedule_jobs(current_app, scheduler)
    return jsonify({'job_id': job_id, 'trigger_args': trigger_args})


# --- LIVE LOG STREAMING ROUTES ---
def _stream(worker, log_queue, final_status):
    @stream_with_context
    def generate():
        for message in iter_log_queue(log_queue, worker):
            yield f'data: {message}\n\n'
        worker.join()
        yield f'event: status\ndata: {final_status()}\n\n'
    return Response(generate(), mimetype='text/event-stream')


def run_job_with_streaming_log(job_id, app, log_queue):
    with app.app_context():
        handler = QueueHandler(log_queue)
        root_logger = logging.getLogger()
        root_logger.addHandler(handler)
        try:
            job = scheduler.get_job(job_id)
            if job:
                root_logger.info(f"Manually triggering job: {job.name} ({job.id})")
                job.func(*job.args, **job.kwargs)
            else:
                root_logger.error(f"Job '{job_id}' is not scheduled.")
        except Exception as e:
            root_logger.error(f"Exception during manual run of job '{job_id}': {e}", exc_info=True)
        finally:
            log_queue.put(LOG_END)
            root_logger.removeHandler(handler)


@main_bp.route('/stream-log/<job_id>')
def stream_log(job_id):
    log_queue = queue.Queue()
    app = current_app._get_current_object()
    thread = Thread(target=run_job_with_streaming_log, args=(job_id, app, log_queue))
    thread.start()

    def final_status():
        final_log = JobLog.query.filter_by(job_id=job_id).order_by(JobLog.timestamp.desc()).first()
        return final_log.status if final_log else 'UNKNOWN'
    return _stream(thread, log_queue, final_status)


def run_sync_with_streaming_log(wholesaler_id, sync_type, app, log_queue):
    with app.app_context():
        handler = QueueHandler(log_queue)
        root_logger = logging.getLogger()
        root_logger.addHandler(handler)
        try:
            SyncService().run(wholesaler_id, sync_type, record_limit=app.config.get('JOB_RECORD_LIMIT'))
        except SyncAlreadyRunningError as e:
            root_logger.warning(str(e))
        except Exception as e:
            root_logger.error(f"Exception during manual sync of wholesaler {wholesaler_id}: {e}", exc_info=True)
        finally:
            log_queue.put(LOG_END)
            root_logger.removeHandler(handler)


@main_bp.route('/wholesalers/<int:wholesaler_id>/sync/stream')
def stream_sync(wholesaler_id):
    sync_type = request.args.get('type', 'incremental')
    if sync_type not in SYNC_TYPES:
        return jsonify({'error': f"Unknown sync type '{sync_type}'."}), 400
    if ApiConfigRepository.for_wholesaler(wholesaler_id) is None:
        return jsonify({'error': f"Wholesaler {wholesaler_id} has no API config."}), 404

    log_queue = queue.Queue()
    app = current_app._get_current_object()
    thread = Thread(target=run_sync_with_streaming_log, args=(wholesaler_id, sync_type, app, log_queue))
    thread.start()

    def final_status():
        latest = SyncLogRepository.recent(limit=1, wholesaler_id=wholesaler_id)
        return latest[0].status if latest else 'UNKNOWN'
    return _stream(thread, log_queue, final_status)


# --- SYNC RUN ROUTES ---
@main_bp.route('/syncs')
def list_syncs():
    limit = request.args.get('limit', 50, type=int)
    wholesaler_id = request.args.get('wholesaler_id', type=int)
    return jsonify({'syncs': [_sync_log_summary(s) for s in SyncLogRepository.recent(limit, wholesaler_id)]})


@main_bp.route('/syncs/<sync_id>')
def sync_detail(sync_id):
    sync_log = SyncLog.query.filter_by(sync_id=sync_id).first_or_404()
    data = _sync_log_summary(sync_log)
    data['errors'] = [e.to_dict() for e in sync_log.errors]
    return jsonify(data)


@main_bp.route('/syncs/<sync_id>/cancel', methods=['POST'])
def cancel_sync(sync_id):
    sync_log = SyncLog.query.filter_by(sync_id=sync_id).first_or_404()
    if sync_log.status != 'running':
        return jsonify({'error': f"Sync {sync_id} is not running (status: {sync_log.status})."}), 409
    sync_log.cancel_requested = True
    sync_log.cancel_reason = _payload().get('reason') or 'Cancelled by operator request'
    db.session.commit()
    logger.info(f"Cancellation requested for sync {sync_id}.")
    return jsonify({'message': f"Sync {sync_id} will stop after its current chunk."})


@main_bp.route('/wholesalers/<int:wholesaler_id>/sync', methods=['POST'])
def start_sync(wholesaler_id):
    sync_type = _payload().get('sync_type', 'incremental')
    if sync_type not in SYNC_TYPES:
        return jsonify({'error': f"Unknown sync type '{sync_type}'."}), 400
    if ApiConfigRepository.for_wholesaler(wholesaler_id) is None:
        return jsonify({'error': f"Wholesaler {wholesaler_id} has no API config."}), 404
    if not dispatch_sync(wholesaler_id, sync_type):
        return jsonify({'error': f"A sync for wholesaler {wholesaler_id} is already running."}), 409
    latest = SyncLogRepository.recent(limit=1, wholesaler_id=wholesaler_id)
    return jsonify({'message': f"{sync_type.capitalize()} sync started.",
                    'sync': _sync_log_summary(latest[0]) if latest else None}), 202


@main_bp.route('/wholesalers/<int:wholesaler_id>/cursor/reset', methods=['POST'])
def reset_cursor(wholesaler_id):
    sync_type = _payload().get('sync_type', 'incremental')
    cursor = SyncCursor.query.filter_by(wholesaler_id=wholesaler_id, sync_type=sync_type).first_or_404()
    cursor.reset()
    db.session.commit()
    logger.warning(f"Cursor of wholesaler {wholesaler_id} ({sync_type}) reset by operator.")
    return jsonify({'message': 'Cursor reset. The next run starts from the beginning.'})


# --- ERROR LOG ROUTES ---
@main_bp.route('/errors')
def list_errors():
    query = SyncErrorLog.query
    if request.args.get('wholesaler_id'):
        query = query.filter_by(wholesaler_id=request.args.get('wholesaler_id', type=int))
    if request.args.get('error_type'):
        query = query.filter_by(error_type=request.args['error_type'])
    if request.args.get('unresolved') in ('1', 'true'):
        query = query.filter_by(is_resolved=False)
    errors = query.order_by(SyncErrorLog.id.desc()).limit(request.args.get('limit', 100, type=int)).all()
    return jsonify({'errors': [e.to_dict() for e in errors]})


@main_bp.route('/errors/<int:error_id>/resolve', methods=['POST'])
def resolve_error(error_id):
    error = db.get_or_404(SyncErrorLog, error_id)
    data = _payload()
    error.resolve(data.get('user'), data.get('notes'))
    db.session.commit()
    return jsonify(error.to_dict())


# --- MAPPINGS ROUTES ---
@main_bp.route('/wholesalers/<int:wholesaler_id>/mappings')
def get_mappings_data(wholesaler_id):
    db.get_or_404(Wholesaler, wholesaler_id)
    return jsonify(mapping_service.get_all_mappings(wholesaler_id))


@main_bp.route('/wholesalers/<int:wholesaler_id>/mappings/<section>', methods=['POST'])
def save_mappings_data(wholesaler_id, section):
    db.get_or_404(Wholesaler, wholesaler_id)
    data = request.get_json(silent=True)
    if not data or 'mappings' not in data: return jsonify({"error": "Invalid payload."}), 400
    try:
        count = mapping_service.save_mappings(wholesaler_id, section, data['mappings'])
        return jsonify({"message": f"Saved {count} mappings."})
    except (mapping_service.MappingConfigError, TypeError) as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400


# --- CATALOG ROUTES ---
@main_bp.route('/tours/<int:tour_id>', methods=['PATCH'])
def edit_tour(tour_id):
    """Operator edit. Every edited field is protected from later syncs."""
    tour = db.get_or_404(Tour, tour_id)
    data = _payload()
    unknown = [field for field in data if field not in TOUR_FIELDS]
    if unknown:
        return jsonify({'error': f"Fields not editable: {', '.join(sorted(unknown))}"}), 400
    try:
        for field, value in data.items():
            value = coerce(field, value, TOUR_FIELDS[field])
            if value is None and not Tour.__table__.columns[field].nullable:
                db.session.rollback()
                return jsonify({'error': f"Field '{field}' cannot be empty."}), 400
            setattr(tour, field, value)
    except TypeCastError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400
    tour.mark_fields_as_overridden(list(data))
    db.session.commit()
    return jsonify(tour.to_dict())


@main_bp.route('/tours/<int:tour_id>/overrides', methods=['POST'])
def mark_overrides(tour_id):
    tour = db.get_or_404(Tour, tour_id)
    fields = _payload().get('fields') or []
    if not fields:
        return jsonify({'error': "No fields given."}), 400
    tour.mark_fields_as_overridden(fields)
    db.session.commit()
    return jsonify(tour.to_dict())


@main_bp.route('/tours/<int:tour_id>/overrides', methods=['DELETE'])
def clear_overrides(tour_id):
    tour = db.get_or_404(Tour, tour_id)
    fields = _payload().get('fields')
    if fields:
        for field in fields:
            tour.clear_field_override(field)
    else:
        tour.clear_all_overrides()
    db.session.commit()
    return jsonify(tour.to_dict())


@main_bp.route('/tours/<int:tour_id>/recalculate', methods=['POST'])
def recalculate_tour(tour_id):
    tour = db.get_or_404(Tour, tour_id)
    _recalculate(tour)
    db.session.commit()
    return jsonify(tour.to_dict())


@main_bp.route('/aggregates/recalculate', methods=['POST'])
def recalculate_aggregates():
    count = AggregationService(SettingsProvider()).recalculate_all(_payload().get('wholesaler_id'))
    return jsonify({'message': f"Recalculated {count} tours."})


@main_bp.route('/periods/<int:period_id>', methods=['PATCH'])
def edit_period(period_id):
    period = db.get_or_404(Period, period_id)
    data = _payload()
    for field in PERIOD_EDITABLE_FIELDS:
        if field not in data:
            continue
        if field == 'status':
            if data['status'] not in PERIOD_STATUSES:
                return jsonify({'error': f"Invalid status '{data['status']}'."}), 400
            period.status = data['status']
        else:
            try:
                setattr(period, field, max(0, int(data[field])))
            except (TypeError, ValueError):
                return jsonify({'error': f"'{field}' must be an integer."}), 400
    period.update_availability()
    _recalculate(period.tour)
    db.session.commit()
    return jsonify({'id': period.id, 'capacity': period.capacity, 'booked': period.booked,
                    'available': period.available, 'status': period.status,
                    'tour': period.tour.to_dict()})


# --- FEDERATED SEARCH ---
@main_bp.route('/search', methods=['GET', 'POST'])
def search_tours():
    if request.method == 'POST':
        params = dict(_payload())
    else:
        params = request.args.to_dict()
    wholesaler_ids = params.pop('wholesaler_ids', None)
    if isinstance(wholesaler_ids, str):
        wholesaler_ids = [int(w) for w in wholesaler_ids.split(',') if w.strip().isdigit()]
    return jsonify(UnifiedSearchService().search_tours(params, wholesaler_ids or None))
