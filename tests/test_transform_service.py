# tests/test_transform_service.py
from app.services.lookup_resolver import LookupResolver
from app.services.transform_service import TransformService, extract_path, flatten_nested_path, RAW_KEY

from conftest import STANDARD_RULES, make_tour_payload


def rule(field, path, kind='direct', section='tour', **config):
    return {'section': section, 'canonical_field': field, 'source_path': path,
            'transform_kind': kind, 'transform_config': config or None}


def test_extract_path_dot_notation_and_fallbacks():
    raw = {'price': {'adult': 12900}, 'name': '', 'title': 'Seoul Autumn'}
    assert extract_path(raw, 'price.adult') == 12900
    assert extract_path(raw, 'name|title') == 'Seoul Autumn'
    assert extract_path(raw, 'missing|price.child') is None
    assert extract_path(None, 'name') is None


def test_extract_path_reads_first_array_element():
    raw = {'periods': [{'start': '2099-01-01'}, {'start': '2099-02-01'}]}
    assert extract_path(raw, 'periods[].start') == '2099-01-01'
    assert extract_path({'periods': []}, 'periods[].start') is None


def test_flatten_nested_path_collects_all_children():
    raw = {'periods': [
        {'tour_period': [{'id': 1}, {'id': 2}]},
        {'tour_period': [{'id': 3}]},
        {'tour_period': None},
    ]}
    assert [p['id'] for p in flatten_nested_path(raw, 'periods[].tour_period[]')] == [1, 2, 3]
    assert flatten_nested_path(raw, '') == []


def test_direct_rules_omit_missing_values():
    service = TransformService.from_rules([rule('title', 'name'), rule('highlight', 'teaser')])
    canonical = service.to_canonical({'name': 'Hokkaido Snow'})
    assert canonical['title'] == 'Hokkaido Snow'
    assert 'highlight' not in canonical
    assert canonical[RAW_KEY] == {'name': 'Hokkaido Snow'}


def test_value_map_with_map_and_pairs():
    service = TransformService.from_rules([
        rule('status', 'state', 'value_map', map={'A': 'active', 'X': '__EMPTY__'}),
        rule('transport_id', 'air', 'value_map', pairs=[{'from': 1, 'to': 'TG'}]),
    ])
    assert service.to_canonical({'state': 'A', 'air': 1})['status'] == 'active'
    assert service.to_canonical({'state': 'X'})['status'] == ''
    assert service.to_canonical({'state': 'Z'})['status'] == 'Z'
    assert service.to_canonical({'air': '1'})['transport_id'] == 'TG'


def test_lookup_resolves_country_and_emits_code_and_name(db, japan):
    service = TransformService.from_rules(
        [rule('primary_country_id', 'country', 'lookup', table='countries')], lookup_resolver=LookupResolver())

    canonical = service.to_canonical({'country': 'ญี่ปุ่น'})

    assert canonical['primary_country_id'] == japan.id
    assert canonical['primary_country_id_code'] == 'ญี่ปุ่น'
    assert canonical['primary_country_id_name'] == 'Japan'


def test_lookup_miss_keeps_raw_value(db):
    service = TransformService.from_rules(
        [rule('primary_country_id', 'country', 'lookup', table='countries')], lookup_resolver=LookupResolver())
    canonical = service.to_canonical({'country': 'Atlantis'})
    assert canonical['primary_country_id'] == 'Atlantis'
    assert 'primary_country_id_name' not in canonical


def test_split_join_and_template():
    service = TransformService.from_rules([
        rule('locations', 'cities', 'split', delimiter='/'),
        rule('highlight', 'tags', 'join', delimiter=' | '),
        rule('title', 'name', 'template', template='{value} ({days}D)'),
    ])
    canonical = service.to_canonical({'cities': 'Osaka / Kyoto / ', 'tags': ['food', None, 'temples'],
                                      'name': 'Kansai', 'days': 6})
    assert canonical['locations'] == ['Osaka', 'Kyoto']
    assert canonical['highlight'] == 'food | temples'
    assert canonical['title'] == 'Kansai (6D)'


def test_transform_tour_extracts_children():
    service = TransformService.from_rules(STANDARD_RULES)
    result = service.transform_tour(make_tour_payload())

    assert result['tour']['external_id'] == 'EXT-100'
    assert result['tour']['title'] == 'Tokyo Highlights'
    assert len(result['periods']) == 1
    assert result['periods'][0]['price_adult'] == 10000
    assert result['periods'][0]['start_date'] == '2099-03-01'
    assert [it['day_number'] for it in result['itineraries']] == [1, 2]


def test_configured_data_structure_path_wins():
    service = TransformService.from_rules(
        [rule('start_date', 'date', section='departure')],
        data_structure={'departures': {'path': 'schedule[].rounds[]'}},
    )
    raw = {'schedule': [{'rounds': [{'date': '2099-05-01'}, {'date': '2099-06-01'}]}]}
    periods = service.transform_tour(raw)['periods']
    assert [p['start_date'] for p in periods] == ['2099-05-01', '2099-06-01']


def test_to_source_params_renames_mapped_keys():
    service = TransformService.from_rules(STANDARD_RULES)
    params = service.to_source_params({'title': 'tokyo', 'primary_country_id': 'JP', 'page_size': 20})
    assert params == {'name': 'tokyo', 'country': 'JP', 'page_size': 20}
    assert service.supports_search_param('title')
    assert not service.supports_search_param('description')


def test_direct_rules_map_back_to_the_source_fields():
    service = TransformService.from_rules([rule('title', 'name'), rule('duration_days', 'days'), rule('status', 'state')])
    raw = {'name': 'Hanoi Halong', 'days': 4, 'state': 'open', 'extra': 'ignored'}

    canonical = {k: v for k, v in service.to_canonical(raw).items() if k != RAW_KEY}

    assert service.to_source_params(canonical) == {'name': 'Hanoi Halong', 'days': 4, 'state': 'open'}


def test_fetched_items_are_flattened_below_the_first_level():
    service = TransformService.from_rules(
        [rule('start_date', 'date', section='departure')],
        data_structure={'departures': {'path': 'periods[].tour_period[]'}},
    )
    fetched = [{'tour_period': [{'date': '2099-05-01'}, {'date': '2099-06-01'}]}, {'date': '2099-07-01'}, 'noise']

    items = service.extract_fetched_items(fetched, 'departure')

    assert [item['date'] for item in items] == ['2099-05-01', '2099-06-01', '2099-07-01']
    assert TransformService.from_rules(STANDARD_RULES).extract_fetched_items(fetched[:2], 'departure') == fetched[:2]
