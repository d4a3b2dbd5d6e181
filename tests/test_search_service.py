# tests/test_search_service.py
import pytest

from app.services.adapters.base import SyncResult
from app.services.search_service import UnifiedSearchService, sort_tours, period_matches

from conftest import FakeAdapter, make_tour_payload


@pytest.fixture
def two_wholesalers(make_wholesaler):
    good = make_wholesaler()
    broken = make_wholesaler()
    tours = [
        make_tour_payload(code='T1', name='Tokyo Highlights', price=30000, start='2099-03-01'),
        make_tour_payload(code='T2', name='Seoul Food Trail', price=18000, start='2099-05-01', country='KR'),
        make_tour_payload(code='T3', name='Osaka and Kyoto', price=24000, start='2099-04-01'),
    ]
    adapters = {
        good.wholesaler_id: FakeAdapter(good, pages=[tours]),
        broken.wholesaler_id: FakeAdapter(broken, pages=[SyncResult.failure('Service unavailable', 503)]),
    }
    return good, broken, adapters


def make_service(adapters):
    return UnifiedSearchService(adapter_factory=lambda cfg: adapters[cfg.wholesaler_id])


def codes(result):
    return [tour['external_id'] for tour in result['tours']]


def test_failing_wholesaler_is_reported_not_fatal(db, two_wholesalers):
    good, broken, adapters = two_wholesalers

    result = make_service(adapters).search_tours({})

    assert result['success'] is True
    assert sorted(codes(result)) == ['T1', 'T2', 'T3']
    assert result['total'] == 3
    assert result['meta']['wholesalers_searched'] == 2
    assert [e['wholesaler_id'] for e in result['errors']] == [broken.wholesaler_id]
    assert 'Service unavailable' in result['errors'][0]['error']
    assert {t['_wholesaler_id'] for t in result['tours']} == {good.wholesaler_id}


def test_params_are_sent_in_wholesaler_names(db, two_wholesalers):
    good, _, adapters = two_wholesalers

    make_service(adapters).search_tours({'primary_country_id': 'JP', 'title': 'tokyo', '_sort': 'price', 'q': ''},
                                        wholesaler_ids=[good.wholesaler_id])

    assert adapters[good.wholesaler_id].calls[0] == ('tours', None, {'country': 'JP', 'name': 'tokyo'})


def test_country_filter_matches_aliases(db, japan, two_wholesalers):
    good, _, adapters = two_wholesalers

    result = make_service(adapters).search_tours({'country': 'ญี่ปุ่น'}, wholesaler_ids=[good.wholesaler_id])

    assert sorted(codes(result)) == ['T1', 'T3']
    assert result['tours'][0]['primary_country_id_name'] == 'Japan'


def test_keyword_filter(db, two_wholesalers):
    good, _, adapters = two_wholesalers
    result = make_service(adapters).search_tours({'keyword': 'KYOTO'}, wholesaler_ids=[good.wholesaler_id])
    assert codes(result) == ['T3']


def test_period_filters_prune_periods_and_drop_empty_tours(db, make_wholesaler):
    api_config = make_wholesaler()
    payload = make_tour_payload(code='T1', price=10000)
    payload['periods'].append({'id': 'T1-P2', 'start': '2099-06-01', 'price': 20000, 'seats': 10, 'available': 8})
    cheap = make_tour_payload(code='T2', price=9000)
    adapters = {api_config.wholesaler_id: FakeAdapter(api_config, pages=[[payload, cheap]])}

    result = make_service(adapters).search_tours({'min_price': 15000})

    assert codes(result) == ['T1']
    assert [p['external_id'] for p in result['tours'][0]['periods']] == ['T1-P2']


def test_sorting_and_limit(db, two_wholesalers):
    good, _, adapters = two_wholesalers
    service = make_service(adapters)

    by_price = service.search_tours({'_sort': 'price'}, wholesaler_ids=[good.wholesaler_id])
    assert codes(by_price) == ['T2', 'T3', 'T1']

    latest_first = service.search_tours({'_sort': '-departure_date', '_limit': 2}, wholesaler_ids=[good.wholesaler_id])
    assert codes(latest_first) == ['T2', 'T3']
    assert latest_first['total'] == 2


def test_two_phase_search_fetches_periods(db, make_wholesaler):
    api_config = make_wholesaler(sync_mode='two_phase', endpoints={'periods': '/tours/{external_id}/periods'})
    payload = make_tour_payload(code='T1')
    periods = payload.pop('periods')
    adapter = FakeAdapter(api_config, pages=[[payload]], periods={'/tours/T1/periods': periods})

    result = make_service({api_config.wholesaler_id: adapter}).search_tours({})

    assert result['tours'][0]['periods'][0]['price_adult'] == 10000


def test_two_phase_search_flattens_nested_periods(db, make_wholesaler):
    api_config = make_wholesaler(
        sync_mode='two_phase',
        endpoints={'periods': '/tours/{external_id}/periods'},
        aggregation_config={'data_structure': {'departures': {'path': 'periods[].tour_period[]'}}},
    )
    payload = make_tour_payload(code='T1')
    first = payload.pop('periods')[0]
    second = dict(first, id='T1-P2', start='2099-04-01', price=8000)
    adapter = FakeAdapter(api_config, pages=[[payload]],
                          periods={'/tours/T1/periods': [{'tour_period': [first]}, {'tour_period': [second]}]})

    result = make_service({api_config.wholesaler_id: adapter}).search_tours({})

    prices = sorted(p['price_adult'] for p in result['tours'][0]['periods'])
    assert prices == [8000, 10000]


def test_sort_tours_puts_missing_values_last():
    tours = [{'id': 1}, {'id': 2, 'duration_days': 8}, {'id': 3, 'duration_days': 5}]
    assert [t['id'] for t in sort_tours(tours, 'duration_days')] == [3, 2, 1]
    assert [t['id'] for t in sort_tours(tours, '-duration_days')] == [2, 3, 1]


def test_period_matches():
    period = {'start_date': '2099-03-01', 'price_adult': '12,500', 'available': 3}
    assert period_matches(period, {'departure_from': '2099-02-01', 'max_price': 13000})
    assert not period_matches(period, {'departure_to': '2099-02-28'})
    assert not period_matches(period, {'min_seats': 4})
