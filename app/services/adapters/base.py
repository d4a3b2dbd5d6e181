# app/services/adapters/base.py
from dataclasses import dataclass, field


@dataclass
class SyncResult:
    """One page of tours from a wholesaler."""
    success: bool
    tours: list = field(default_factory=list)
    next_cursor: str = None
    has_more: bool = False
    total_count: int = None
    error_message: str = None
    error_code: int = None

    def should_continue(self):
        return self.success and self.has_more and self.next_cursor is not None

    @classmethod
    def failure(cls, message, code=None):
        return cls(success=False, error_message=message, error_code=code)


@dataclass
class PeriodsResult:
    success: bool
    periods: list = field(default_factory=list)
    error_message: str = None
    error_code: int = None
    raw_data: object = None

    @classmethod
    def failure(cls, message, code=None):
        return cls(success=False, error_message=message, error_code=code)


@dataclass
class ItinerariesResult:
    success: bool
    itineraries: list = field(default_factory=list)
    error_message: str = None
    error_code: int = None
    raw_data: object = None

    @classmethod
    def failure(cls, message, code=None):
        return cls(success=False, error_message=message, error_code=code)


@dataclass
class AckResult:
    success: bool
    accepted: bool = False
    error_message: str = None


class BaseAdapter:
    """
    Transport contract every wholesaler integration implements.

    Expected failures (timeouts, 4xx/5xx, malformed payloads) come back as
    unsuccessful result objects, never as exceptions.
    """

    def __init__(self, api_config):
        self.api_config = api_config

    @property
    def api_calls(self):
        return 0

    def fetch_tours(self, cursor=None, params=None):
        raise NotImplementedError

    def fetch_tour_detail(self, code):
        raise NotImplementedError

    def fetch_periods(self, endpoint):
        raise NotImplementedError

    def fetch_itineraries(self, endpoint):
        raise NotImplementedError

    def acknowledge_synced(self, tour_codes, sync_id):
        return AckResult(success=True, accepted=False)

    def test_connection(self):
        result = self.fetch_tours(params={'limit': 1})
        return {'success': result.success, 'message': result.error_message or 'Connection successful.'}
