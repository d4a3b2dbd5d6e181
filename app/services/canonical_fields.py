# app/services/canonical_fields.py
"""
Projection tables from canonical records onto catalog columns.

Each table maps a canonical field name to the type its column expects.
`project()` converts a canonical record into column values and raises
TypeCastError for values that cannot be converted.
"""
import json
import logging
import re

from app.utils.dates import parse_date
from .sync_error_handler import TypeCastError

logger = logging.getLogger(__name__)

TOUR_FIELDS = {
    'title': 'text',
    'description': 'text',
    'highlight': 'text',
    'wholesaler_tour_code': 'text',
    'duration_days': 'int',
    'duration_nights': 'int',
    'primary_country_id': 'ref',
    'transport_id': 'ref',
    'locations': 'list',
    'image_url': 'text',
    'pdf_url': 'text',
}

PERIOD_FIELDS = {
    'period_code': 'text',
    'start_date': 'date',
    'end_date': 'date',
    'capacity': 'int',
    'booked': 'int',
    'available': 'int',
}

OFFER_FIELDS = {
    'currency': 'text',
    'price_adult': 'decimal',
    'discount_adult': 'decimal',
    'price_child': 'decimal',
    'price_child_nobed': 'decimal',
    'price_infant': 'decimal',
    'price_single': 'decimal',
    'deposit': 'decimal',
}

ITINERARY_FIELDS = {
    'day_number': 'int',
    'title': 'text',
    'description': 'text',
    'places': 'list',
    'hotel_name': 'text',
    'hotel_star': 'int',
    'has_breakfast': 'bool',
    'has_lunch': 'bool',
    'has_dinner': 'bool',
}

_TRUTHY = {'true', '1', 'yes', 'y', 'on', 'active', 'enabled'}
_FALSY = {'false', '0', 'no', 'n', 'off', 'inactive', 'disabled', ''}


def _to_int(value):
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        cleaned = re.sub(r'[^0-9\-]', '', value)
        if cleaned and cleaned != '-':
            return int(cleaned)
    raise ValueError('not an integer')


def _to_decimal(value):
    if isinstance(value, bool):
        raise ValueError('boolean is not a number')
    if isinstance(value, (int, float)):
        return round(float(value), 2)
    if isinstance(value, str):
        cleaned = re.sub(r'[^0-9.\-]', '', value.replace(',', ''))
        if cleaned:
            return round(float(cleaned), 2)
    raise ValueError('not a number')


def _to_bool(value):
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError('not a boolean')


def _to_list(value):
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.startswith('['):
            try:
                decoded = json.loads(text)
                if isinstance(decoded, list):
                    return decoded
            except ValueError:
                pass
        for delimiter in (',', '|', ';'):
            if delimiter in text:
                return [part.strip() for part in text.split(delimiter) if part.strip()]
        return [text] if text else []
    return [value]


def coerce(field, value, expected_type):
    if value is None:
        return None
    try:
        if expected_type == 'text':
            if isinstance(value, (dict, list)):
                return json.dumps(value, ensure_ascii=False)
            return str(value)
        if expected_type == 'int':
            return _to_int(value)
        if expected_type == 'decimal':
            return _to_decimal(value)
        if expected_type == 'bool':
            return _to_bool(value)
        if expected_type == 'date':
            return parse_date(value)
        if expected_type == 'list':
            return _to_list(value)
        if expected_type == 'ref':
            # A lookup miss leaves the wholesaler's raw code here; the reference stays unset.
            if isinstance(value, int) and not isinstance(value, bool):
                return value
            if isinstance(value, str) and value.strip().isdigit():
                return int(value)
            logger.debug(f"Unresolved reference for '{field}': {value!r}")
            return None
    except (TypeError, ValueError) as e:
        raise TypeCastError(field, value, expected_type, f"Cannot convert {value!r} to {expected_type} for field '{field}': {e}")
    raise TypeCastError(field, value, expected_type, f"Unknown field type '{expected_type}' for field '{field}'.")


def project(canonical, table):
    """Column values for every field of `table` present in the canonical record."""
    values = {}
    for field, expected_type in table.items():
        if field in canonical:
            values[field] = coerce(field, canonical[field], expected_type)
    return values
