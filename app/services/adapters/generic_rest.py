# app/services/adapters/generic_rest.py
import logging
from datetime import datetime

from .base import BaseAdapter, SyncResult, PeriodsResult, ItinerariesResult, AckResult

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = {
    'tours': '',
    'tour_detail': '/{code}',
    'periods': '/{code}/periods',
    'itineraries': '/{code}/itineraries',
    'ack': '/sync/acknowledge',
}

TOUR_LIST_KEYS = ('data', 'tours', 'items', 'results')
PERIOD_LIST_KEYS = ('data', 'schedules', 'periods', 'departures')
ITINERARY_LIST_KEYS = ('data', 'itineraries', 'days', 'programs')


def unwrap_list(payload, keys):
    """Returns the record list from a bare list or from the first matching wrapper key."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                return value
            # {"data": {"tours": [...]}}
            if isinstance(value, dict):
                nested = unwrap_list(value, keys)
                if nested:
                    return nested
    return None


class GenericRestAdapter(BaseAdapter):
    """
    JSON-over-REST wholesaler integration driven entirely by WholesalerApiConfig.

    Pagination is cursor based: the cursor is sent as a query parameter and the
    next one is read from next_cursor / cursor / pagination.next_cursor.
    """

    def __init__(self, api_config, http_client):
        super().__init__(api_config)
        self.client = http_client

    @property
    def api_calls(self):
        return self.client.request_count

    def endpoint(self, name):
        return self.api_config.get_endpoint(name, DEFAULT_ENDPOINTS.get(name, ''))

    def fetch_tours(self, cursor=None, params=None):
        query = dict(params or {})
        if cursor:
            query[self.api_config.get_endpoint('cursor_param', 'cursor')] = cursor
        if self.api_config.chunk_size and 'limit' not in query:
            query['limit'] = self.api_config.chunk_size

        response = self.client.request('GET', self.endpoint('tours'), query_params=query)
        if response.get('error'):
            return SyncResult.failure(response['error'], response.get('status_code'))

        payload = response.get('data')
        tours = unwrap_list(payload, TOUR_LIST_KEYS)
        if tours is None:
            return SyncResult.failure("Malformed tour payload: no tour list found.", 502)

        next_cursor, has_more, total_count = None, False, None
        if isinstance(payload, dict):
            pagination = payload.get('pagination') or payload.get('meta') or {}
            next_cursor = payload.get('next_cursor') or payload.get('cursor') or pagination.get('next_cursor') or pagination.get('next')
            if 'has_more' in payload:
                has_more = bool(payload['has_more'])
            elif 'hasMore' in payload:
                has_more = bool(payload['hasMore'])
            elif 'has_more' in pagination:
                has_more = bool(pagination['has_more'])
            else:
                has_more = next_cursor is not None
            total_count = payload.get('total') or pagination.get('total')

        return SyncResult(
            success=True,
            tours=[t for t in tours if isinstance(t, dict)],
            next_cursor=str(next_cursor) if next_cursor is not None else None,
            has_more=has_more,
            total_count=total_count,
        )

    def fetch_tour_detail(self, code):
        response = self.client.request('GET', self.endpoint('tour_detail'), path_params={'code': code})
        if response.get('error'):
            return None
        data = response.get('data')
        if isinstance(data, dict) and isinstance(data.get('data'), dict):
            return data['data']
        return data if isinstance(data, dict) else None

    def fetch_periods(self, endpoint):
        response = self.client.request('GET', endpoint)
        if response.get('error'):
            return PeriodsResult.failure(response['error'], response.get('status_code'))
        periods = unwrap_list(response.get('data'), PERIOD_LIST_KEYS)
        if periods is None:
            return PeriodsResult.failure("Malformed periods payload.", 502)
        return PeriodsResult(success=True, periods=[p for p in periods if isinstance(p, dict)], raw_data=response.get('data'))

    def fetch_itineraries(self, endpoint):
        response = self.client.request('GET', endpoint)
        if response.get('error'):
            return ItinerariesResult.failure(response['error'], response.get('status_code'))
        itineraries = unwrap_list(response.get('data'), ITINERARY_LIST_KEYS)
        if itineraries is None:
            return ItinerariesResult.failure("Malformed itineraries payload.", 502)
        return ItinerariesResult(success=True, itineraries=[i for i in itineraries if isinstance(i, dict)], raw_data=response.get('data'))

    def acknowledge_synced(self, tour_codes, sync_id):
        if self.api_config.sync_method != 'ack_callback':
            return AckResult(success=True, accepted=False)

        payload = {'sync_id': sync_id, 'tour_codes': list(tour_codes), 'synced_at': datetime.utcnow().isoformat()}
        response = self.client.request('POST', self.endpoint('ack'), body_payload=payload)
        if response.get('error'):
            return AckResult(success=False, error_message=response['error'])
        data = response.get('data') if isinstance(response.get('data'), dict) else {}
        return AckResult(success=True, accepted=bool(data.get('accepted', data.get('success', True))))
