# app/utils/dates.py
import logging
from datetime import date, datetime

import pytz

logger = logging.getLogger(__name__)

_DATE_FORMATS = ('%Y-%m-%d', '%d/%m/%Y', '%Y/%m/%d', '%d-%m-%Y', '%Y-%m-%d %H:%M:%S', '%Y-%m-%dT%H:%M:%S')


def local_now(tz_name):
    return datetime.now(pytz.timezone(tz_name))


def local_today(tz_name):
    """Today's date in the configured application timezone."""
    return local_now(tz_name).date()


def parse_date(value):
    """
    Converts wholesaler date values to a date.
    Accepts date/datetime objects and the common string formats wholesalers send.
    Raises ValueError when the value cannot be parsed.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        # ISO timestamps with zone info, e.g. 2026-03-01T00:00:00+07:00
        if 'T' in text:
            text = text.split('T')[0]
        for fmt in _DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                continue
    raise ValueError(f"Cannot parse date: {value!r}")
