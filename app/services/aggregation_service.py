# app/services/aggregation_service.py
import logging
from collections import Counter

from flask import current_app

from app import db
from app.utils.dates import local_today
from .db_repositories import PeriodRepository, ApiConfigRepository, TourRepository
from .settings_service import get_promotion_thresholds

logger = logging.getLogger(__name__)

AGGREGATION_METHODS = ('min', 'max', 'avg', 'first', 'last')

# Aggregate field -> default reduction over the open, upcoming periods.
DEFAULT_AGGREGATIONS = {
    'price_adult': 'min',
    'discount_adult': 'max',
    'min_price': 'min',
    'max_price': 'max',
    'display_price': 'min',
    'discount_amount': 'max',
}

# Which per-period value each aggregate reduces.
PRICE_FIELDS = ('price_adult', 'min_price', 'max_price', 'display_price')
DISCOUNT_FIELDS = ('discount_adult', 'discount_amount')


def reduce_values(values, method):
    """Collapses a list with one of the aggregation methods. An empty list gives None."""
    if not values:
        return None
    if method == 'min':
        return min(values)
    if method == 'max':
        return max(values)
    if method == 'avg':
        return round(sum(values) / len(values), 2)
    if method == 'first':
        return values[0]
    if method == 'last':
        return values[-1]
    raise ValueError(f"Unknown aggregation method '{method}'.")


def classify_promotion(percent, thresholds):
    if percent is None:
        return 'none'
    if percent >= thresholds['fire_sale_min_percent']:
        return 'fire_sale'
    if percent >= thresholds['normal_promo_min_percent']:
        return 'normal'
    return 'none'


def hotel_star_mode(stars):
    """Most frequent star rating; ties go to the higher rating."""
    if not stars:
        return None
    counts = Counter(stars)
    return max(counts, key=lambda star: (counts[star], star))


class AggregationService:
    """
    Recomputes a tour's derived summary fields from its open upcoming periods,
    their offers, and its itineraries. Never writes to periods or offers.
    """

    def __init__(self, settings, today=None):
        self.settings = settings
        self._today = today

    def today(self):
        if self._today is not None:
            return self._today() if callable(self._today) else self._today
        return local_today(current_app.config['APP_TIMEZONE'])

    def resolve_methods(self, api_config=None, overrides=None):
        """default < global 'tour_aggregations' setting < wholesaler aggregation_config < caller override"""
        methods = dict(DEFAULT_AGGREGATIONS)
        layers = [
            ('global', self.settings.get('tour_aggregations', {}) or {}),
            ('wholesaler', (api_config.aggregation_config or {}) if api_config is not None else {}),
            ('override', overrides or {}),
        ]
        for layer_name, layer in layers:
            for field, method in layer.items():
                if field not in DEFAULT_AGGREGATIONS:
                    continue
                if method not in AGGREGATION_METHODS:
                    logger.warning(f"Ignoring invalid {layer_name} aggregation method '{method}' for '{field}'.")
                    continue
                methods[field] = method
        return methods

    def resolve_thresholds(self, api_config=None):
        thresholds = get_promotion_thresholds(self.settings)
        configured = ((api_config.aggregation_config or {}).get('promotion_thresholds') if api_config is not None else None) or {}
        for key in thresholds:
            if configured.get(key) is not None:
                thresholds[key] = float(configured[key])
        return thresholds

    def compute(self, tour, api_config=None, overrides=None):
        """Returns the aggregate column values for a tour without writing them."""
        today = self.today()
        methods = self.resolve_methods(api_config, overrides)
        thresholds = self.resolve_thresholds(api_config)
        periods = PeriodRepository.open_upcoming(tour, today)

        prices, discounts, percents = [], [], []
        for period in periods:
            offer = period.offer
            if offer is None:
                continue
            price = offer.price_adult
            discount = offer.effective_discount(today)
            if price:
                prices.append(price)
            if discount:
                discounts.append(discount)
            if price and discount:
                percents.append(discount / price * 100)

        values = {}
        for field in PRICE_FIELDS:
            values[field] = reduce_values(prices, methods[field])
        for field in DISCOUNT_FIELDS:
            values[field] = reduce_values(discounts, methods[field])

        if percents:
            max_percent = round(max(percents), 2)
        elif prices:
            max_percent = 0.0
        else:
            max_percent = None
        values['max_discount_percent'] = max_percent
        values['promotion_type'] = classify_promotion(max_percent, thresholds)
        values['has_promotion'] = values['promotion_type'] != 'none'

        stars = [it.hotel_star for it in tour.itineraries if it.hotel_star]
        values['hotel_star'] = hotel_star_mode(stars)
        values['hotel_star_min'] = min(stars) if stars else None
        values['hotel_star_max'] = max(stars) if stars else None

        values['available_seats'] = sum(p.available or 0 for p in periods)
        values['next_departure_date'] = periods[0].start_date if periods else None
        values['total_departures'] = len(periods)
        return values

    def recalculate(self, tour, api_config=None, overrides=None):
        """Writes all aggregates onto the tour in one update. The caller commits."""
        if api_config is None and tour.wholesaler_id is not None:
            api_config = ApiConfigRepository.for_wholesaler(tour.wholesaler_id)
        values = self.compute(tour, api_config, overrides)
        for field, value in values.items():
            setattr(tour, field, value)
        logger.debug(f"Recalculated aggregates for tour {tour.tour_code}: min_price={values['min_price']}, promotion={values['promotion_type']}")
        return values

    def recalculate_all(self, wholesaler_id=None):
        """Recomputes every tour (of one wholesaler, if given). Returns the number of tours updated."""
        count = 0
        config_cache = {}
        for tour in TourRepository.for_wholesaler(wholesaler_id):
            if tour.wholesaler_id not in config_cache:
                config_cache[tour.wholesaler_id] = ApiConfigRepository.for_wholesaler(tour.wholesaler_id) if tour.wholesaler_id else None
            try:
                self.recalculate(tour, config_cache[tour.wholesaler_id])
                db.session.commit()
                count += 1
            except Exception as e:
                db.session.rollback()
                logger.error(f"Failed to recalculate aggregates for tour {tour.id}: {e}", exc_info=True)
        logger.info(f"Recalculated aggregates for {count} tours.")
        return count
