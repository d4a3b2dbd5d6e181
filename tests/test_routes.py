# tests/test_routes.py
from datetime import date, datetime

import pytest

from app.models import JobConfig, SyncLog, SyncErrorLog, SyncCursor, Tour, Period, Offer
from app.services.adapters import AdapterFactory

from conftest import FakeAdapter


@pytest.fixture
def job(db):
    config = JobConfig(job_id='cancel_stuck_syncs', name='Maintenance: Cancel Stuck Syncs', trigger_args={'minute': '*/5'})
    db.session.add(config)
    db.session.commit()
    return config


@pytest.fixture
def tour(db):
    tour = Tour(tour_code='NT209901001', title='Tokyo Highlights', external_id='EXT-100', data_source='api')
    period = Period(tour=tour, start_date=date(2099, 3, 1), capacity=10, booked=2, available=8)
    db.session.add_all([tour, period, Offer(period=period, price_adult=10000, discount_adult=1000)])
    db.session.commit()
    return tour


def add_sync_log(db, wholesaler_id, status='running', sync_id='sync_20990101_000000_abcdef'):
    now = datetime.utcnow()
    sync_log = SyncLog(sync_id=sync_id, wholesaler_id=wholesaler_id, status=status, started_at=now, last_heartbeat_at=now)
    db.session.add(sync_log)
    db.session.commit()
    return sync_log


def test_job_dashboard(client, job):
    response = client.get('/jobs')
    assert response.status_code == 200
    body = response.get_json()
    assert body['jobs'][0]['id'] == 'cancel_stuck_syncs'
    assert body['jobs'][0]['trigger_str'] == 'N/A'


def test_job_trigger_and_terminate(client, db, job):
    assert client.post('/job/trigger/unknown').status_code == 404
    assert client.post('/job/terminate/cancel_stuck_syncs').status_code == 409

    job.is_running = True
    db.session.commit()
    assert client.post('/job/trigger/cancel_stuck_syncs').status_code == 409
    assert client.post('/job/terminate/cancel_stuck_syncs').status_code == 200
    assert job.cancellation_requested is True


def test_job_schedule_and_toggle(client, job):
    assert client.post('/job/update_schedule/cancel_stuck_syncs', json={'cron_string': '*/10 *'}).status_code == 400
    assert client.post('/job/update_schedule/cancel_stuck_syncs', json={'cron_string': '99 * * * *'}).status_code == 400

    response = client.post('/job/update_schedule/cancel_stuck_syncs', json={'cron_string': '*/10 * * * *'})
    assert response.status_code == 200
    assert job.trigger_args['minute'] == '*/10'

    response = client.post('/job/toggle_enable/cancel_stuck_syncs')
    assert response.get_json()['is_enabled'] is False


def test_sync_listing_and_detail(client, db, make_wholesaler):
    api_config = make_wholesaler()
    sync_log = add_sync_log(db, api_config.wholesaler_id, status='partial')
    db.session.add(SyncErrorLog(sync_log_id=sync_log.id, wholesaler_id=api_config.wholesaler_id,
                                error_type='validation', error_message='Tour has no external_id.'))
    db.session.commit()

    listing = client.get(f'/syncs?wholesaler_id={api_config.wholesaler_id}').get_json()
    assert [s['sync_id'] for s in listing['syncs']] == [sync_log.sync_id]
    assert listing['syncs'][0]['started_relative']

    detail = client.get(f'/syncs/{sync_log.sync_id}').get_json()
    assert detail['errors'][0]['error_type'] == 'validation'
    assert client.get('/syncs/sync_missing').status_code == 404


def test_cancel_sync(client, db, make_wholesaler):
    api_config = make_wholesaler()
    finished = add_sync_log(db, api_config.wholesaler_id, status='completed', sync_id='sync_done')
    running = add_sync_log(db, api_config.wholesaler_id, sync_id='sync_live')

    assert client.post(f'/syncs/{finished.sync_id}/cancel').status_code == 409
    assert client.post(f'/syncs/{running.sync_id}/cancel', json={'reason': 'Wrong mapping'}).status_code == 200
    assert running.cancel_requested is True
    assert running.cancel_reason == 'Wrong mapping'


def test_start_sync_validation(client, db, make_wholesaler):
    api_config = make_wholesaler()
    assert client.post('/wholesalers/999/sync', json={}).status_code == 404
    assert client.post(f'/wholesalers/{api_config.wholesaler_id}/sync', json={'sync_type': 'weekly'}).status_code == 400

    add_sync_log(db, api_config.wholesaler_id)
    assert client.post(f'/wholesalers/{api_config.wholesaler_id}/sync', json={}).status_code == 409


def test_start_sync_runs_inline_without_scheduler(client, db, make_wholesaler):
    api_config = make_wholesaler(code='FAKE')
    AdapterFactory.register('FAKE', FakeAdapter)
    try:
        response = client.post(f'/wholesalers/{api_config.wholesaler_id}/sync', json={'sync_type': 'full'})
    finally:
        AdapterFactory.unregister('FAKE')

    assert response.status_code == 202
    body = response.get_json()
    assert body['sync']['status'] == 'completed'
    assert body['sync']['sync_type'] == 'full'


def test_cursor_reset(client, db, make_wholesaler):
    api_config = make_wholesaler()
    cursor = SyncCursor(wholesaler_id=api_config.wholesaler_id, sync_type='incremental', cursor_value='c9')
    db.session.add(cursor)
    db.session.commit()

    assert client.post(f'/wholesalers/{api_config.wholesaler_id}/cursor/reset', json={}).status_code == 200
    assert cursor.cursor_value is None
    assert client.post(f'/wholesalers/{api_config.wholesaler_id}/cursor/reset', json={'sync_type': 'full'}).status_code == 404


def test_resolve_error(client, db, make_wholesaler):
    api_config = make_wholesaler()
    sync_log = add_sync_log(db, api_config.wholesaler_id, status='partial')
    error = SyncErrorLog(sync_log_id=sync_log.id, wholesaler_id=api_config.wholesaler_id,
                         error_type='type_cast', error_message='bad price')
    db.session.add(error)
    db.session.commit()

    body = client.post(f'/errors/{error.id}/resolve', json={'user': 'ops', 'notes': 'fixed mapping'}).get_json()
    assert body['is_resolved'] is True
    assert body['resolved_by'] == 'ops'
    assert client.get('/errors?unresolved=1').get_json()['errors'] == []
    assert client.post('/errors/999/resolve').status_code == 404


def test_mappings_endpoints(client, make_wholesaler):
    wholesaler_id = make_wholesaler().wholesaler_id

    mappings = client.get(f'/wholesalers/{wholesaler_id}/mappings').get_json()
    assert mappings['tour']['title']['source_path'] == 'name|title'

    bad = client.post(f'/wholesalers/{wholesaler_id}/mappings/tour', json={'mappings': [
        {'canonical_field': 'status', 'source_path': 'state', 'transform_kind': 'value_map'}]})
    assert bad.status_code == 400
    assert client.post(f'/wholesalers/{wholesaler_id}/mappings/tour', json={}).status_code == 400

    ok = client.post(f'/wholesalers/{wholesaler_id}/mappings/tour', json={'mappings': [
        {'canonical_field': 'highlight', 'source_path': 'teaser'}]})
    assert ok.status_code == 200


def test_tour_edit_marks_overrides(client, tour):
    response = client.patch(f'/tours/{tour.id}', json={'title': 'Tokyo by Night', 'duration_days': '6'})
    assert response.status_code == 200
    body = response.get_json()
    assert body['title'] == 'Tokyo by Night'
    assert set(body['manual_override_fields']) == {'title', 'duration_days'}
    assert tour.duration_days == 6

    assert client.patch(f'/tours/{tour.id}', json={'min_price': 1}).status_code == 400
    assert client.patch(f'/tours/{tour.id}', json={'duration_days': 'many'}).status_code == 400
    assert client.patch(f'/tours/{tour.id}', json={'title': None}).status_code == 400
    assert tour.title == 'Tokyo by Night'

    cleared = client.delete(f'/tours/{tour.id}/overrides', json={'fields': ['title']}).get_json()
    assert set(cleared['manual_override_fields']) == {'duration_days'}
    cleared = client.delete(f'/tours/{tour.id}/overrides', json={}).get_json()
    assert cleared['manual_override_fields'] == {}


def test_period_edit_updates_availability_and_aggregates(client, tour):
    period_id = tour.periods[0].id

    body = client.patch(f'/periods/{period_id}', json={'booked': 10}).get_json()

    assert body['available'] == 0
    assert body['status'] == 'sold_out'
    assert body['tour']['available_seats'] == 0
    assert body['tour']['total_departures'] == 0
    assert client.patch(f'/periods/{period_id}', json={'status': 'gone'}).status_code == 400


def test_recalculate_tour(client, tour):
    body = client.post(f'/tours/{tour.id}/recalculate').get_json()
    assert body['min_price'] == 10000
    assert body['available_seats'] == 8
    assert body['promotion_type'] == 'normal'


def test_search_without_wholesalers(client, db):
    body = client.get('/search?keyword=tokyo&wholesaler_ids=1,2').get_json()
    assert body['success'] is True
    assert body['total'] == 0
    assert body['errors'] == []
