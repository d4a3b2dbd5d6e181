# app/services/search_service.py
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, date

from flask import current_app
from sqlalchemy import func, or_

from app.models import Country
from app.utils.dates import parse_date
from .adapters import AdapterFactory
from .db_repositories import ApiConfigRepository
from .lookup_resolver import LookupResolver
from .mapping_service import MappingNotFoundError
from .sync_service import build_endpoint
from .transform_service import TransformService, RAW_KEY

logger = logging.getLogger(__name__)

# Control keys of a search request, applied after merging and never sent to a wholesaler.
INTERNAL_PARAMS = ('_sort', '_limit', '_offset')
PERIOD_FILTER_PARAMS = ('departure_from', 'departure_to', 'min_price', 'max_price', 'min_seats')
KEYWORD_FIELDS = ('title', 'wholesaler_tour_code', 'external_id', 'description', 'highlight',
                  'locations', 'primary_country_id_name', 'primary_country_id_code')


def _as_date(value):
    if value in (None, ''):
        return None
    if isinstance(value, date):
        return value
    try:
        return parse_date(value)
    except ValueError:
        return None


def _as_number(value):
    if value in (None, '') or isinstance(value, bool):
        return None
    try:
        return float(str(value).replace(',', ''))
    except ValueError:
        return None


def period_start(period):
    return _as_date(period.get('start_date') or period.get('departure_date'))


def period_price(period):
    return _as_number(period.get('price_adult') if period.get('price_adult') is not None else period.get('price'))


def period_seats(period):
    return _as_number(period.get('available') if period.get('available') is not None else period.get('available_seats'))


def period_matches(period, params):
    start = period_start(period)
    departure_from = _as_date(params.get('departure_from'))
    departure_to = _as_date(params.get('departure_to'))
    if departure_from and (start is None or start < departure_from):
        return False
    if departure_to and (start is None or start > departure_to):
        return False

    price = period_price(period)
    min_price = _as_number(params.get('min_price'))
    max_price = _as_number(params.get('max_price'))
    if min_price is not None and (price is None or price < min_price):
        return False
    if max_price is not None and (price is None or price > max_price):
        return False

    min_seats = _as_number(params.get('min_seats'))
    if min_seats is not None and (period_seats(period) or 0) < min_seats:
        return False
    return True


def lowest_period_price(tour):
    prices = [p for p in (period_price(period) for period in tour.get('periods') or []) if p is not None]
    return min(prices) if prices else None


def earliest_departure(tour):
    dates = [d for d in (period_start(period) for period in tour.get('periods') or []) if d is not None]
    return min(dates) if dates else None


def sort_tours(tours, sort_by):
    """Sorts by a canonical field or a derived key. A leading '-' means descending; missing values go last."""
    if not sort_by:
        return list(tours)
    descending = sort_by.startswith('-')
    key_name = sort_by.lstrip('-')

    if key_name in ('price', 'price_adult'):
        extract = lowest_period_price
    elif key_name == 'departure_date':
        extract = earliest_departure
    else:
        def extract(tour):
            return tour.get(key_name)

    present = [t for t in tours if extract(t) is not None]
    missing = [t for t in tours if extract(t) is None]
    try:
        present.sort(key=extract, reverse=descending)
    except TypeError:
        present.sort(key=lambda t: str(extract(t)), reverse=descending)
    return present + missing


def expand_country_terms(value):
    """The search term plus every known code and name of the country it refers to."""
    term = str(value).strip().upper()
    terms = {term}
    country = Country.query.filter(or_(
        func.upper(Country.iso2) == term,
        func.upper(Country.iso3) == term,
        func.upper(Country.name_en) == term,
        func.upper(Country.name_th) == term,
        func.upper(Country.name_en).like(f"%{term}%"),
    )).first()
    if country is not None:
        terms.update(alias.upper() for alias in country.aliases())
    return terms


def _country_values(tour):
    values = []
    for key in ('primary_country_id_code', 'primary_country_id_name', 'country'):
        if tour.get(key):
            values.append(str(tour[key]).upper())
    # An unresolved lookup leaves the wholesaler's own country code in place.
    if isinstance(tour.get('primary_country_id'), str):
        values.append(tour['primary_country_id'].upper())
    raw = tour.get(RAW_KEY) or {}
    raw_countries = raw.get('countries') or raw.get('Countries') or []
    if isinstance(raw_countries, list):
        for country in raw_countries:
            if isinstance(country, dict):
                values.extend(str(country[k]).upper() for k in ('code', 'name') if country.get(k))
            elif country:
                values.append(str(country).upper())
    if not values:
        legacy = raw.get('CountryName') or raw.get('countryName') or raw.get('country')
        if legacy:
            values.append(str(legacy).upper())
    return values


def _keyword_text(tour):
    parts = []
    for key in KEYWORD_FIELDS:
        value = tour.get(key)
        if isinstance(value, (list, tuple)):
            parts.extend(str(v) for v in value)
        elif value is not None:
            parts.append(str(value))
    return ' '.join(parts).lower()


class UnifiedSearchService:
    """
    Live search across wholesaler APIs in canonical field names.

    Every active wholesaler is queried on its own; a failing source is
    reported in `errors` while the others still return results.
    """

    def __init__(self, adapter_factory=None, max_workers=None):
        self.adapter_factory = adapter_factory or AdapterFactory.create
        self.max_workers = max_workers

    def search_tours(self, search_params, wholesaler_ids=None):
        search_params = dict(search_params or {})
        configs = ApiConfigRepository.active_configs(wholesaler_ids)
        targets = [(c.wholesaler_id, c.wholesaler.name if c.wholesaler else None) for c in configs]
        logger.info(f"Searching {len(targets)} wholesalers with params {search_params}")

        tours, errors = [], []
        for wholesaler_id, wholesaler_name, result, error in self._fan_out(targets, search_params):
            if error is not None:
                errors.append({'wholesaler_id': wholesaler_id, 'wholesaler_name': wholesaler_name, 'error': error})
            else:
                tours.extend(result)

        tours = self.apply_client_filters(tours, search_params)
        tours = sort_tours(tours, search_params.get('_sort'))

        offset = int(search_params.get('_offset') or 0)
        limit = search_params.get('_limit')
        if offset:
            tours = tours[offset:]
        if limit:
            tours = tours[:int(limit)]

        return {
            'success': True,
            'tours': tours,
            'total': len(tours),
            'errors': errors,
            'meta': {
                'search_params': search_params,
                'wholesalers_searched': len(targets),
                'searched_at': datetime.utcnow().isoformat(),
            },
        }

    def _fan_out(self, targets, search_params):
        workers = self.max_workers or current_app.config.get('SEARCH_MAX_WORKERS', 4)
        if workers <= 1 or len(targets) <= 1:
            return [self._search_one(wholesaler_id, name, search_params) for wholesaler_id, name in targets]

        app = current_app._get_current_object()

        def run_in_context(target):
            with app.app_context():
                return self._search_one(target[0], target[1], search_params)

        with ThreadPoolExecutor(max_workers=min(workers, len(targets))) as executor:
            return list(executor.map(run_in_context, targets))

    def _search_one(self, wholesaler_id, wholesaler_name, search_params):
        try:
            return wholesaler_id, wholesaler_name, self.search_wholesaler(wholesaler_id, search_params), None
        except Exception as e:
            logger.error(f"Search failed for wholesaler {wholesaler_id}: {e}", exc_info=True)
            return wholesaler_id, wholesaler_name, None, str(e)

    def search_wholesaler(self, wholesaler_id, search_params):
        """Canonical tours of one wholesaler for the query, with periods attached and filtered."""
        api_config = ApiConfigRepository.for_wholesaler(wholesaler_id)
        if api_config is None:
            raise ValueError(f"No API config found for wholesaler {wholesaler_id}.")
        wholesaler_name = api_config.wholesaler.name if api_config.wholesaler else None

        transformer = TransformService.for_wholesaler(wholesaler_id, api_config, LookupResolver(preload_countries=False))
        adapter = self.adapter_factory(api_config)

        query = {k: v for k, v in search_params.items() if k not in INTERNAL_PARAMS and v not in (None, '')}
        api_params = transformer.to_source_params(query, 'tour')

        result = adapter.fetch_tours(cursor=None, params=api_params)
        if not result.success:
            raise RuntimeError(result.error_message or 'Failed to fetch tours')

        tours = []
        for raw_tour in result.tours:
            transformed = transformer.transform_tour(raw_tour)
            tour = transformed['tour']
            tour['_wholesaler_id'] = wholesaler_id
            tour['_wholesaler_name'] = wholesaler_name
            if api_config.sync_mode == 'two_phase':
                tour['periods'] = self._fetch_periods(api_config, adapter, transformer, tour, raw_tour)
            else:
                tour['periods'] = transformed['periods']
            tours.append(tour)

        tours = self.apply_client_filters(tours, search_params)
        return self.filter_periods(tours, search_params)

    def _fetch_periods(self, api_config, adapter, transformer, tour, raw_tour):
        template = api_config.get_endpoint('periods')
        if not template:
            return []
        try:
            endpoint = build_endpoint(template, tour, raw_tour)
        except MappingNotFoundError as e:
            logger.warning(f"Skipping periods of tour {tour.get('external_id')}: {e}")
            return []
        periods_result = adapter.fetch_periods(endpoint)
        if not periods_result.success:
            logger.warning(f"Periods fetch failed for tour {tour.get('external_id')}: {periods_result.error_message}")
            return []
        periods = transformer.extract_fetched_items(periods_result.periods, 'departure')
        return transformer.to_canonical_many(periods, 'departure')

    def apply_client_filters(self, tours, search_params):
        """Drops tours that fail the query. A tour whose periods all miss a period filter is dropped too."""
        country_terms = expand_country_terms(search_params['country']) if search_params.get('country') else None
        keyword = str(search_params['keyword']).lower() if search_params.get('keyword') else None
        has_period_filter = any(search_params.get(k) not in (None, '') for k in PERIOD_FILTER_PARAMS)

        kept = []
        for tour in tours:
            if country_terms:
                values = _country_values(tour)
                if values and not any(term in value or value in term for term in country_terms for value in values):
                    continue
            if keyword and keyword not in _keyword_text(tour):
                continue
            periods = tour.get('periods') or []
            if has_period_filter and periods and not any(period_matches(p, search_params) for p in periods):
                continue
            kept.append(tour)
        return kept

    def filter_periods(self, tours, search_params):
        """Prunes the periods that miss the date, price or seat filters from each tour."""
        if not any(search_params.get(k) not in (None, '') for k in PERIOD_FILTER_PARAMS):
            return tours
        for tour in tours:
            if tour.get('periods'):
                tour['periods'] = [p for p in tour['periods'] if period_matches(p, search_params)]
        return tours
