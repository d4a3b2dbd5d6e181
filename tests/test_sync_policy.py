# tests/test_sync_policy.py
from datetime import date

import pytest

from app.models import Tour, WholesalerApiConfig
from app.services.canonical_fields import coerce, project, TOUR_FIELDS, PERIOD_FIELDS
from app.services.settings_service import DictSettingsProvider
from app.services.sync_error_handler import TypeCastError
from app.services.sync_policy import SyncPolicy

TODAY = date(2099, 1, 15)


def make_policy(settings=None, **config):
    return SyncPolicy.from_config(WholesalerApiConfig(**config), DictSettingsProvider(settings))


def test_wholesaler_values_override_global_settings():
    policy = make_policy({'sync_settings': {'never_sync_fields': ['title'], 'skip_past_periods': False}},
                         never_sync_fields=['highlight'])
    assert policy.never_sync_fields == {'highlight'}
    assert policy.skip_past_periods is False
    assert policy.respect_manual_overrides is True


def test_filter_fields_respects_overrides():
    tour = Tour(title='Edited', manual_override_fields={'title': '2099-01-01T00:00:00'})
    policy = make_policy(never_sync_fields=['image_url'])

    writable, skipped = policy.filter_fields({'title': 'New', 'duration_days': 5, 'image_url': 'x.jpg'}, tour)

    assert writable == {'duration_days': 5}
    assert sorted(skipped) == ['image_url', 'title']


def test_always_sync_and_disabled_override_respect():
    tour = Tour(manual_override_fields={'title': '2099-01-01T00:00:00', 'highlight': '2099-01-01T00:00:00'})
    assert make_policy(always_sync_fields=['title']).is_field_syncable('title', tour)
    assert make_policy(respect_manual_overrides=False).is_field_syncable('highlight', tour)


def test_disabled_tours():
    policy = make_policy()
    assert policy.is_disabled_tour({'status': ' Closed '})
    assert policy.is_disabled_tour({'is_active': False})
    assert not policy.is_disabled_tour({'status': 'active'})
    assert not make_policy(skip_disabled_tours=False).is_disabled_tour({'status': 'closed'})


@pytest.mark.parametrize('handling, threshold, start, expected', [
    ('skip', 0, date(2099, 1, 14), 'skip'),
    ('close', 0, date(2099, 1, 14), 'close'),
    ('skip', 0, date(2099, 1, 15), 'keep'),
    ('skip', 3, date(2099, 1, 13), 'keep'),
    ('bogus', 0, date(2099, 1, 1), 'skip'),
])
def test_past_period_action(handling, threshold, start, expected):
    policy = make_policy(past_period_handling=handling, past_period_threshold_days=threshold)
    assert policy.past_period_action(start, TODAY) == expected


def test_coerce_types():
    assert coerce('duration_days', '7 days', 'int') == 7
    assert coerce('price_adult', '29,900.50', 'decimal') == 29900.5
    assert coerce('has_lunch', 'Yes', 'bool') is True
    assert coerce('locations', 'Osaka, Kyoto', 'list') == ['Osaka', 'Kyoto']
    assert coerce('locations', '["Seoul"]', 'list') == ['Seoul']
    assert coerce('start_date', '2099-03-01', 'date') == date(2099, 3, 1)
    assert coerce('primary_country_id', 'JP', 'ref') is None
    assert coerce('primary_country_id', 12, 'ref') == 12
    assert coerce('title', None, 'text') is None


def test_coerce_failures_name_the_field():
    with pytest.raises(TypeCastError) as excinfo:
        coerce('capacity', 'plenty', 'int')
    assert excinfo.value.field == 'capacity'
    assert excinfo.value.value == 'plenty'
    assert excinfo.value.expected_type == 'int'

    with pytest.raises(TypeCastError):
        coerce('has_dinner', 'maybe', 'bool')


def test_project_only_known_present_fields():
    assert project({'title': 'A', 'unknown': 1, '_raw': {}}, TOUR_FIELDS) == {'title': 'A'}
    assert project({'start_date': '01/03/2099', 'capacity': '20'}, PERIOD_FIELDS) == {
        'start_date': date(2099, 3, 1), 'capacity': 20}


def test_pending_fields_ignore_protected_and_equal_values():
    tour = Tour(title='Edited', duration_days=5, highlight='Old',
                manual_override_fields={'title': '2099-01-01T00:00:00'})
    incoming = {'title': 'Tokyo', 'duration_days': 5, 'highlight': 'New'}

    assert make_policy().pending_fields(incoming, tour) == ['highlight']
    assert make_policy(always_sync_fields=['title']).pending_fields(incoming, tour) == ['highlight', 'title']
