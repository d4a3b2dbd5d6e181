# app/services/lookup_resolver.py
import logging
import re

from sqlalchemy import func, or_

from app.models import Country, City, Transport

logger = logging.getLogger(__name__)

# "Thai Airways (TG)" -> "TG"
_CODE_IN_PARENS_RE = re.compile(r'\(([A-Za-z0-9]{2,3})\)\s*$')

COUNTRY_MATCH_FIELDS = ('iso2', 'iso3', 'name_en', 'name_th')


class LookupResolver:
    """
    Resolves wholesaler codes and names to reference-table ids.

    Results (including misses) are cached for the lifetime of the resolver,
    which is one sync run or one search request. A miss returns None; callers
    keep the raw value.
    """

    def __init__(self, preload_countries=True):
        self._cache = {}
        self._countries = None
        if preload_countries:
            self._preload_countries()

    def _preload_countries(self):
        self._countries = {}
        for country in Country.query.all():
            for alias in country.aliases():
                self._countries.setdefault(alias.strip().lower(), (country.id, country.name_en))
        logger.debug(f"Preloaded {len(self._countries)} country aliases.")

    def resolve(self, table, value, match_by=None):
        """Returns (id, display_name) or None."""
        if value is None or value == '':
            return None
        if isinstance(value, (list, dict)):
            return None
        key = (table, match_by, str(value).strip().lower())
        if key in self._cache:
            return self._cache[key]

        if table == 'countries':
            result = self._resolve_country(str(value).strip(), match_by)
        elif table == 'cities':
            result = self._resolve_city(str(value).strip())
        elif table == 'transports':
            result = self._resolve_transport(str(value).strip())
        else:
            logger.warning(f"Unknown lookup table '{table}'.")
            result = None

        if result is None:
            logger.debug(f"Lookup miss: {table} '{value}'")
        self._cache[key] = result
        return result

    def _resolve_country(self, value, match_by=None):
        if match_by in COUNTRY_MATCH_FIELDS:
            column = getattr(Country, match_by)
            country = Country.query.filter(func.lower(column) == value.lower()).first()
            return (country.id, country.name_en) if country else None

        if self._countries is not None:
            return self._countries.get(value.lower())

        country = Country.query.filter(or_(
            func.lower(Country.iso2) == value.lower(),
            func.lower(Country.iso3) == value.lower(),
            func.lower(Country.name_en) == value.lower(),
            Country.name_th == value,
        )).first()
        return (country.id, country.name_en) if country else None

    def _resolve_city(self, value):
        city = City.query.filter(or_(
            func.lower(City.name_en) == value.lower(),
            City.name_th == value,
        )).first()
        return (city.id, city.name_en) if city else None

    def _resolve_transport(self, value):
        code_match = _CODE_IN_PARENS_RE.search(value)
        code = code_match.group(1) if code_match else value
        transport = Transport.query.filter(func.upper(Transport.code) == code.upper()).first()
        if transport is None:
            name = _CODE_IN_PARENS_RE.sub('', value).strip() or value
            transport = Transport.query.filter(Transport.name.ilike(f"%{name}%")).first()
        return (transport.id, transport.name) if transport else None
