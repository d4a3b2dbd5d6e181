# tests/conftest.py
import pytest

from app import create_app, db as _db
from app.models import Wholesaler, WholesalerApiConfig, MappingRule, Country
from app.services.adapters.base import BaseAdapter, SyncResult, PeriodsResult, ItinerariesResult, AckResult

# A wholesaler payload shape used across the sync and search tests:
#   {"code", "name", "days", "country", "status",
#    "periods": [{"id", "start", "end", "price", "discount", "seats", "available"}],
#    "days_plan": [{"day", "title", "star"}]}
STANDARD_RULES = [
    {'section': 'tour', 'canonical_field': 'external_id', 'source_path': 'code'},
    {'section': 'tour', 'canonical_field': 'wholesaler_tour_code', 'source_path': 'code'},
    {'section': 'tour', 'canonical_field': 'title', 'source_path': 'name|title'},
    {'section': 'tour', 'canonical_field': 'duration_days', 'source_path': 'days'},
    {'section': 'tour', 'canonical_field': 'primary_country_id', 'source_path': 'country',
     'transform_kind': 'lookup', 'transform_config': {'table': 'countries'}},
    {'section': 'tour', 'canonical_field': 'status', 'source_path': 'status'},
    {'section': 'departure', 'canonical_field': 'external_id', 'source_path': 'periods[].id'},
    {'section': 'departure', 'canonical_field': 'start_date', 'source_path': 'periods[].start'},
    {'section': 'departure', 'canonical_field': 'end_date', 'source_path': 'periods[].end'},
    {'section': 'departure', 'canonical_field': 'price_adult', 'source_path': 'periods[].price'},
    {'section': 'departure', 'canonical_field': 'discount_adult', 'source_path': 'periods[].discount'},
    {'section': 'departure', 'canonical_field': 'capacity', 'source_path': 'periods[].seats'},
    {'section': 'departure', 'canonical_field': 'available', 'source_path': 'periods[].available'},
    {'section': 'itinerary', 'canonical_field': 'day_number', 'source_path': 'days_plan[].day'},
    {'section': 'itinerary', 'canonical_field': 'title', 'source_path': 'days_plan[].title'},
    {'section': 'itinerary', 'canonical_field': 'hotel_star', 'source_path': 'days_plan[].star'},
]


def make_tour_payload(code='EXT-100', name='Tokyo Highlights', price=10000, discount=3000,
                      start='2099-03-01', seats=30, available=20, **extra):
    payload = {
        'code': code,
        'name': name,
        'days': 5,
        'country': 'JP',
        'status': 'active',
        'periods': [{
            'id': f"{code}-P1", 'start': start, 'end': '2099-03-05',
            'price': price, 'discount': discount, 'seats': seats, 'available': available,
        }],
        'days_plan': [
            {'day': 1, 'title': 'Arrive Tokyo', 'star': 4},
            {'day': 2, 'title': 'Mount Fuji', 'star': 4},
        ],
    }
    payload.update(extra)
    return payload


class FakeAdapter(BaseAdapter):
    """
    In-memory wholesaler. `pages` is a list of tour lists (or ready-made SyncResult
    objects); cursors are 'c1', 'c2', ... pointing at the next page.
    """

    def __init__(self, api_config, http_client=None, pages=None, periods=None, itineraries=None, ack=None):
        super().__init__(api_config)
        self.pages = pages if pages is not None else []
        self.periods = periods or {}
        self.itineraries = itineraries or {}
        self.ack = ack or AckResult(success=True, accepted=True)
        self.calls = []
        self.acknowledged = []

    @property
    def api_calls(self):
        return len(self.calls)

    def fetch_tours(self, cursor=None, params=None):
        self.calls.append(('tours', cursor, params))
        index = int(cursor[1:]) if cursor else 0
        if index >= len(self.pages):
            return SyncResult(success=True, tours=[], next_cursor=None, has_more=False)
        page = self.pages[index]
        if isinstance(page, SyncResult):
            return page
        has_more = index + 1 < len(self.pages)
        return SyncResult(success=True, tours=page, next_cursor=f"c{index + 1}", has_more=has_more)

    def fetch_periods(self, endpoint):
        self.calls.append(('periods', endpoint, None))
        if endpoint not in self.periods:
            return PeriodsResult.failure(f"Not found: {endpoint}", 404)
        return PeriodsResult(success=True, periods=self.periods[endpoint])

    def fetch_itineraries(self, endpoint):
        self.calls.append(('itineraries', endpoint, None))
        if endpoint not in self.itineraries:
            return ItinerariesResult.failure(f"Not found: {endpoint}", 404)
        return ItinerariesResult(success=True, itineraries=self.itineraries[endpoint])

    def acknowledge_synced(self, tour_codes, sync_id):
        self.acknowledged.append((list(tour_codes), sync_id))
        return self.ack


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def japan(db):
    country = Country(iso2='JP', iso3='JPN', name_en='Japan', name_th='ญี่ปุ่น')
    db.session.add(country)
    db.session.commit()
    return country


@pytest.fixture
def make_wholesaler(db):
    """Creates a wholesaler with an API config and the standard mapping rules."""
    counter = {'n': 0}

    def _make(code=None, rules=STANDARD_RULES, **config):
        counter['n'] += 1
        wholesaler = Wholesaler(code=code or f"WS{counter['n']}", name=f"Wholesaler {counter['n']}")
        db.session.add(wholesaler)
        db.session.flush()
        config.setdefault('api_base_url', 'https://api.example.test')
        api_config = WholesalerApiConfig(wholesaler_id=wholesaler.id, **config)
        db.session.add(api_config)
        for rule in rules:
            db.session.add(MappingRule(wholesaler_id=wholesaler.id, is_active=True, **rule))
        db.session.commit()
        return api_config

    return _make
