# app/services/sync_error_handler.py
import json
import logging
import traceback

import requests
from sqlalchemy.exc import SQLAlchemyError

from app.models import SyncErrorLog
from app import db
from .mapping_service import MappingNotFoundError, MappingConfigError

logger = logging.getLogger(__name__)

ERROR_TYPES = ('mapping', 'validation', 'lookup', 'type_cast', 'api', 'database', 'rate_limit', 'timeout', 'unknown')
RETRYABLE_TYPES = {'api', 'database', 'rate_limit', 'timeout'}

MAX_MESSAGE_LENGTH = 1000
MAX_TRACE_FRAMES = 10


class TypeCastError(ValueError):
    """A mapped value could not be converted to the canonical field's type."""

    def __init__(self, field, value, expected_type, reason=None):
        self.field = field
        self.value = value
        self.expected_type = expected_type
        super().__init__(reason or f"Cannot convert {value!r} to {expected_type} for field '{field}'.")


class ItemValidationError(ValueError):
    """A canonical record is missing a required field or holds an out-of-range value."""

    def __init__(self, message, field=None, value=None):
        self.field = field
        self.value = value
        super().__init__(message)


class AdapterCallError(Exception):
    """A sub-resource call (periods, itineraries) for one tour failed."""

    def __init__(self, message, status_code=None):
        self.status_code = status_code
        super().__init__(message)


def classify_exception(exc):
    if isinstance(exc, TypeCastError):
        return 'type_cast'
    if isinstance(exc, ItemValidationError):
        return 'validation'
    if isinstance(exc, (MappingNotFoundError, MappingConfigError)):
        return 'mapping'
    if isinstance(exc, AdapterCallError):
        if exc.status_code == 429:
            return 'rate_limit'
        if exc.status_code == 504:
            return 'timeout'
        return 'api'
    if isinstance(exc, requests.exceptions.Timeout):
        return 'timeout'
    if isinstance(exc, requests.exceptions.RequestException):
        return 'api'
    if isinstance(exc, SQLAlchemyError):
        return 'database'

    message = str(exc).lower()
    if 'timed out' in message or 'timeout' in message:
        return 'timeout'
    if 'rate limit' in message or 'too many requests' in message:
        return 'rate_limit'
    if 'lookup' in message:
        return 'lookup'
    if 'mapping' in message:
        return 'mapping'
    return 'unknown'


def _short_trace(exc):
    frames = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return ''.join(frames[-MAX_TRACE_FRAMES:])


def _stringify(value):
    if value is None:
        return None
    if isinstance(value, str):
        return value[:MAX_MESSAGE_LENGTH]
    try:
        return json.dumps(value, ensure_ascii=False, default=str)[:MAX_MESSAGE_LENGTH]
    except (TypeError, ValueError):
        return str(value)[:MAX_MESSAGE_LENGTH]


class SyncErrorHandler:
    """Records item-level failures of one sync run and summarizes them."""

    def __init__(self, sync_log):
        self.sync_log_id = sync_log.id
        self.wholesaler_id = sync_log.wholesaler_id
        self.sync_id = sync_log.sync_id
        self.errors = []

    def record(self, exc, entity_type=None, entity_code=None, section=None, field_name=None, raw_value=None):
        """Persists one SyncErrorLog row. The caller commits."""
        error_type = classify_exception(exc)
        entry = SyncErrorLog(
            sync_log_id=self.sync_log_id,
            wholesaler_id=self.wholesaler_id,
            entity_type=entity_type,
            entity_code=str(entity_code) if entity_code is not None else None,
            section=section,
            field_name=field_name or getattr(exc, 'field', None),
            error_type=error_type,
            error_message=str(exc)[:MAX_MESSAGE_LENGTH] or exc.__class__.__name__,
            raw_value=_stringify(raw_value if raw_value is not None else getattr(exc, 'value', None)),
            expected_type=getattr(exc, 'expected_type', None),
            stack_trace=_short_trace(exc),
        )
        db.session.add(entry)
        self.errors.append(error_type)
        logger.warning(f"[{self.sync_id}] {error_type} error on {entity_type} '{entity_code}': {entry.error_message}")
        return entry

    def get_summary(self):
        by_type = {}
        for error_type in self.errors:
            by_type[error_type] = by_type.get(error_type, 0) + 1
        retryable = sum(count for error_type, count in by_type.items() if error_type in RETRYABLE_TYPES)
        return {'total': len(self.errors), 'by_type': by_type, 'retryable': retryable}

    def should_retry_sync(self):
        """True when more than half of the recorded errors are transient."""
        summary = self.get_summary()
        if summary['total'] == 0:
            return False
        return summary['retryable'] / summary['total'] > 0.5
