# app/services/transform_service.py
import logging

from .mapping_service import MappingConfig, load_mapping_config

logger = logging.getLogger(__name__)

RAW_KEY = '_raw'
EMPTY_MARKER = '__EMPTY__'

# Where departures / itineraries usually live in a raw tour when nothing is configured.
DEFAULT_ARRAY_KEYS = {
    'departure': ('periods', 'Periods', 'departures', 'Departures', 'schedules', 'Schedules'),
    'itinerary': ('itineraries', 'Itineraries', 'days', 'programs'),
}


def _is_blank(value):
    return value is None or value == ''


def _extract_single(data, path):
    current = data
    for segment in path.split('.'):
        if current is None:
            return None
        if segment.endswith('[]'):
            key = segment[:-2]
            current = current.get(key) if isinstance(current, dict) else None
            # "arr[].field" reads the first element of the array.
            if isinstance(current, list):
                current = current[0] if current else None
            continue
        if isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
    return current


def extract_path(data, path):
    """
    Resolves a source path against a raw record.

    Supports dot notation ("price.adult"), first-element array access
    ("periods[].start") and "|" separated fallbacks: the first alternative
    yielding a non-null, non-empty value wins.
    """
    if not path or not isinstance(data, dict):
        return None
    for alternative in path.split('|'):
        alternative = alternative.strip()
        if not alternative:
            continue
        value = _extract_single(data, alternative)
        if not _is_blank(value):
            return value
    return None


def flatten_nested_path(data, path):
    """
    Walks a dot/array path and collects every dict found at its end.

    flatten_nested_path(raw, "periods[].tour_period[]") returns all tour_period
    entries of all periods as one flat list.
    """
    if not path:
        return []
    current = [data]
    for segment in path.split('.'):
        key = segment[:-2] if segment.endswith('[]') else segment
        next_level = []
        for node in current:
            if not isinstance(node, dict):
                continue
            value = node.get(key)
            if isinstance(value, list):
                next_level.extend(value)
            elif value is not None:
                next_level.append(value)
        current = next_level
    return [item for item in current if isinstance(item, dict)]


class TransformService:
    """
    Converts raw wholesaler records to canonical records and canonical
    search parameters back to the wholesaler's parameter names.

    Transformation is pure apart from read-only reference lookups.
    """

    def __init__(self, mapping_config, lookup_resolver=None, data_structure=None):
        self.mapping_config = mapping_config
        self.lookup_resolver = lookup_resolver
        self.data_structure = data_structure or {}
        self._reverse_index = {}
        for section, rules in mapping_config.sections.items():
            self._reverse_index[section] = {
                rule.canonical_field: rule.alternatives[0] for rule in rules if rule.alternatives
            }

    @classmethod
    def for_wholesaler(cls, wholesaler_id, api_config=None, lookup_resolver=None):
        data_structure = ((api_config.aggregation_config or {}).get('data_structure') if api_config else None) or {}
        return cls(load_mapping_config(wholesaler_id), lookup_resolver=lookup_resolver, data_structure=data_structure)

    @classmethod
    def from_rules(cls, rules, wholesaler_id=0, lookup_resolver=None, data_structure=None):
        return cls(MappingConfig.from_rows(wholesaler_id, rules), lookup_resolver=lookup_resolver, data_structure=data_structure)

    # --- forward ---

    def to_canonical(self, raw, section='tour'):
        """Applies every active rule of the section. Unresolved fields produce no key."""
        result = {}
        for rule in self.mapping_config.rules(section):
            value = extract_path(raw, rule.element_path)
            if value is None:
                continue
            for key, out in self._apply_transform(rule, value, raw).items():
                if out is not None:
                    result[key] = out
        result[RAW_KEY] = raw
        return result

    def to_canonical_many(self, items, section='tour'):
        return [self.to_canonical(item, section) for item in items]

    def transform_tour(self, raw):
        """Transforms a raw tour together with its embedded departures and itineraries."""
        return {
            'tour': self.to_canonical(raw, 'tour'),
            'periods': self.to_canonical_many(self.extract_section_items(raw, 'departure'), 'departure'),
            'itineraries': self.to_canonical_many(self.extract_section_items(raw, 'itinerary'), 'itinerary'),
        }

    def section_array_path(self, section):
        structure_key = 'departures' if section == 'departure' else 'itineraries'
        configured = (self.data_structure.get(structure_key) or {}).get('path')
        return configured or self.mapping_config.array_path(section)

    def extract_section_items(self, raw, section):
        """Finds the raw child records (departures or itineraries) inside a raw tour."""
        if not isinstance(raw, dict):
            return []
        path = self.section_array_path(section)
        if path:
            return flatten_nested_path(raw, path)
        for key in DEFAULT_ARRAY_KEYS.get(section, ()):
            if isinstance(raw.get(key), list):
                return [item for item in raw[key] if isinstance(item, dict)]
        return []

    def extract_fetched_items(self, items, section):
        """
        Flattens child records fetched from their own endpoint (two-phase sync).

        The response already sits at the first level of the configured path, so
        only the nested levels below it are walked: with "periods[].tour_period[]"
        every tour_period of every fetched period is returned. Items without the
        nested array are kept as they are.
        """
        items = [item for item in items or [] if isinstance(item, dict)]
        path = self.section_array_path(section)
        if not path or '.' not in path:
            return items
        nested = path.split('.', 1)[1]
        flattened = []
        for item in items:
            flattened.extend(flatten_nested_path(item, nested) or [item])
        return flattened

    def _apply_transform(self, rule, value, raw):
        kind = rule.transform_kind
        config = rule.transform_config
        field = rule.canonical_field

        if kind == 'value_map':
            return {field: self._apply_value_map(value, config)}
        if kind == 'lookup':
            return self._apply_lookup(field, value, config)
        if kind == 'split':
            return {field: self._apply_split(value, config)}
        if kind == 'join':
            delimiter = config.get('delimiter', ', ')
            if isinstance(value, list):
                return {field: delimiter.join(str(v) for v in value if not _is_blank(v))}
            return {field: value}
        if kind == 'template':
            return {field: self._apply_template(value, config.get('template', '{value}'), raw)}
        return {field: value}

    @staticmethod
    def _apply_value_map(value, config):
        value_map = config.get('map')
        if value_map:
            candidates = [value, str(value), str(value).lower()]
            for candidate in candidates:
                if isinstance(candidate, str) and candidate in value_map:
                    mapped = value_map[candidate]
                    return '' if mapped == EMPTY_MARKER else mapped
        for pair in config.get('pairs') or []:
            source = pair.get('from')
            if source == value or (source is not None and str(source) == str(value)):
                mapped = pair.get('to', value)
                return '' if mapped == EMPTY_MARKER else mapped
        return value

    def _apply_lookup(self, field, value, config):
        if self.lookup_resolver is None:
            return {field: value}
        found = self.lookup_resolver.resolve(config['table'], value, config.get('match_by'))
        if not found:
            # Keep the raw value so nothing is lost; the operator can add the reference row later.
            return {field: value}
        ref_id, name = found
        result = {field: ref_id, f"{field}_code": value}
        if config.get('emit_name', True):
            result[f"{field}_name"] = name
        return result

    @staticmethod
    def _apply_split(value, config):
        if not isinstance(value, str):
            return value
        parts = value.split(config.get('delimiter', ','))
        if config.get('trim', True):
            parts = [p.strip() for p in parts]
        return [p for p in parts if p != '']

    @staticmethod
    def _apply_template(value, template, raw):
        if isinstance(value, dict):
            context = value
        else:
            context = dict(raw) if isinstance(raw, dict) else {}
            context['value'] = value
        rendered = template
        for key, replacement in context.items():
            placeholder = '{' + str(key) + '}'
            if placeholder in rendered:
                rendered = rendered.replace(placeholder, '' if replacement is None else str(replacement))
        return rendered

    # --- reverse ---

    def to_source_params(self, params, section='tour'):
        """Renames mapped canonical keys; unknown keys pass through unchanged."""
        reverse = self._reverse_index.get(section, {})
        source_params = {}
        for key, value in params.items():
            source_params[reverse.get(key, key)] = value
        return source_params

    def source_field_name(self, canonical_field, section='tour'):
        return self._reverse_index.get(section, {}).get(canonical_field)

    def supports_search_param(self, canonical_field, section='tour'):
        return canonical_field in self._reverse_index.get(section, {})

    def searchable_fields(self, section='tour'):
        return {
            rule.canonical_field: {
                'canonical_name': rule.canonical_field,
                'source_name': rule.alternatives[0] if rule.alternatives else None,
                'has_value_map': rule.transform_kind == 'value_map',
            }
            for rule in self.mapping_config.rules(section)
        }
