# app/services/mapping_service.py
import logging
import re
from dataclasses import dataclass, field

from app.models import MappingRule
from app import db

logger = logging.getLogger(__name__)

SECTIONS = ('tour', 'departure', 'itinerary')
TRANSFORM_KINDS = ('direct', 'value_map', 'lookup', 'split', 'join', 'template')
LOOKUP_TABLES = ('countries', 'cities', 'transports')

# Keys each transform kind understands in transform_config.
ALLOWED_CONFIG_KEYS = {
    'direct': set(),
    'value_map': {'map', 'pairs'},
    'lookup': {'table', 'match_by', 'emit_name'},
    'split': {'delimiter', 'trim'},
    'join': {'delimiter'},
    'template': {'template'},
}

# "periods[].start_date" -> ("periods", "start_date"); "a[].b[].c" -> ("a[].b", "c")
_ARRAY_PREFIX_RE = re.compile(r"^(.+)\[\]\.([^\[\]]+)$")


class MappingNotFoundError(Exception):
    """Raised when a required mapping rule does not exist."""
    pass


class MappingConfigError(ValueError):
    """Raised when a stored mapping rule cannot be used."""
    pass


def split_array_prefix(path):
    """Splits a child-section path into (array_path, element_path). array_path is None without a prefix."""
    match = _ARRAY_PREFIX_RE.match(path)
    if not match:
        return None, path
    return match.group(1), match.group(2)


@dataclass
class FieldRule:
    section: str
    canonical_field: str
    source_path: str
    transform_kind: str = 'direct'
    transform_config: dict = field(default_factory=dict)
    array_path: str = None
    alternatives: list = field(default_factory=list)

    def __post_init__(self):
        alternatives = []
        for alternative in self.source_path.split('|'):
            alternative = alternative.strip()
            if not alternative:
                continue
            if self.section != 'tour':
                prefix, alternative = split_array_prefix(alternative)
                if prefix and self.array_path is None:
                    self.array_path = prefix
            alternatives.append(alternative)
        self.alternatives = alternatives

    @property
    def element_path(self):
        """The source path with any array prefix stripped, fallbacks re-joined."""
        return '|'.join(self.alternatives)


@dataclass
class MappingConfig:
    wholesaler_id: int
    sections: dict = field(default_factory=dict)

    def rules(self, section):
        return self.sections.get(section, [])

    def array_path(self, section):
        """First array prefix declared by the section's rules, e.g. 'periods'."""
        for rule in self.rules(section):
            if rule.array_path:
                return rule.array_path
        return None

    @classmethod
    def from_rows(cls, wholesaler_id, rows):
        """Builds a validated config from MappingRule rows or equivalent dicts."""
        config = cls(wholesaler_id=wholesaler_id, sections={s: [] for s in SECTIONS})
        for row in rows:
            data = row.to_dict() if isinstance(row, MappingRule) else dict(row)
            if data.get('is_active', True) is False:
                continue
            if not data.get('source_path'):
                continue
            config.sections[data['section']].append(validate_rule(data))
        return config


def validate_rule(data):
    """Checks one rule definition and returns it as a FieldRule."""
    section = data.get('section')
    canonical_field = data.get('canonical_field')
    kind = data.get('transform_kind') or 'direct'
    transform_config = dict(data.get('transform_config') or {})
    label = f"{section}.{canonical_field}"

    if section not in SECTIONS:
        raise MappingConfigError(f"Rule '{label}': unknown section '{section}'.")
    if not canonical_field:
        raise MappingConfigError(f"Rule in section '{section}' has no canonical field.")
    if kind not in TRANSFORM_KINDS:
        raise MappingConfigError(f"Rule '{label}': unknown transform kind '{kind}'.")

    unknown_keys = set(transform_config) - ALLOWED_CONFIG_KEYS[kind]
    if unknown_keys:
        logger.warning(f"Rule '{label}': ignoring unknown transform_config keys {sorted(unknown_keys)} for kind '{kind}'.")
        for key in unknown_keys:
            transform_config.pop(key)

    if kind == 'value_map':
        value_map = transform_config.get('map')
        pairs = transform_config.get('pairs')
        if value_map is None and pairs is None:
            raise MappingConfigError(f"Rule '{label}': value_map needs 'map' or 'pairs'.")
        if value_map is not None and not isinstance(value_map, dict):
            raise MappingConfigError(f"Rule '{label}': 'map' must be an object.")
        if pairs is not None and not all(isinstance(p, dict) and 'from' in p for p in pairs):
            raise MappingConfigError(f"Rule '{label}': every pair needs a 'from' key.")
    elif kind == 'lookup':
        if transform_config.get('table') not in LOOKUP_TABLES:
            raise MappingConfigError(f"Rule '{label}': lookup table must be one of {LOOKUP_TABLES}.")
    elif kind == 'template':
        if not isinstance(transform_config.get('template'), str):
            raise MappingConfigError(f"Rule '{label}': template transform needs a 'template' string.")

    return FieldRule(
        section=section,
        canonical_field=canonical_field,
        source_path=data['source_path'],
        transform_kind=kind,
        transform_config=transform_config,
    )


def get_rules(wholesaler_id, section=None, active_only=True):
    query = MappingRule.query.filter_by(wholesaler_id=wholesaler_id)
    if section:
        query = query.filter_by(section=section)
    if active_only:
        query = query.filter_by(is_active=True)
    return query.order_by(MappingRule.section, MappingRule.id).all()


def get_mapping(wholesaler_id, section, canonical_field, fail_on_not_found=False):
    """
    Retrieves the source path mapped to one canonical field.
    Returns the path string or None.
    If fail_on_not_found is True, raises MappingNotFoundError.
    """
    rule = MappingRule.query.filter_by(
        wholesaler_id=wholesaler_id, section=section, canonical_field=canonical_field, is_active=True
    ).first()
    if rule:
        return rule.source_path

    if fail_on_not_found:
        raise MappingNotFoundError(f"No mapping for '{section}.{canonical_field}' on wholesaler {wholesaler_id}.")
    return None


def get_all_mappings(wholesaler_id):
    """Returns {section: {canonical_field: rule_dict}} for every stored rule of a wholesaler."""
    grouped = {section: {} for section in SECTIONS}
    for rule in get_rules(wholesaler_id, active_only=False):
        grouped.setdefault(rule.section, {})[rule.canonical_field] = rule.to_dict()
    return grouped


def load_mapping_config(wholesaler_id):
    """Decodes and validates all active rules once, for the duration of a sync run or search."""
    rules = get_rules(wholesaler_id)
    config = MappingConfig.from_rows(wholesaler_id, rules)
    logger.info(
        f"Loaded mapping config for wholesaler {wholesaler_id}: "
        + ", ".join(f"{s}={len(config.rules(s))}" for s in SECTIONS)
    )
    return config


def save_mappings(wholesaler_id, section, mappings_to_save):
    """
    Saves a list of rules for one section. Uses an upsert and delete logic.
    - If an item has a source_path, it will be validated, then created or updated.
    - If an item has an empty source_path, its stored rule will be deleted.
    """
    if section not in SECTIONS:
        raise MappingConfigError(f"Unknown section '{section}'.")
    if not isinstance(mappings_to_save, list):
        raise TypeError("mappings_to_save must be a list of dictionaries.")

    existing_rules = {
        r.canonical_field: r
        for r in MappingRule.query.filter_by(wholesaler_id=wholesaler_id, section=section).all()
    }

    saved_count = 0
    deleted_count = 0

    for item in mappings_to_save:
        canonical_field = item.get('canonical_field')
        source_path = (item.get('source_path') or '').strip()
        if not canonical_field:
            continue

        existing_obj = existing_rules.get(canonical_field)

        if source_path:
            rule = validate_rule({**item, 'section': section, 'source_path': source_path})
            if existing_obj:
                existing_obj.source_path = source_path
                existing_obj.transform_kind = rule.transform_kind
                existing_obj.transform_config = rule.transform_config or None
                existing_obj.is_active = item.get('is_active', True)
            else:
                db.session.add(MappingRule(
                    wholesaler_id=wholesaler_id,
                    section=section,
                    canonical_field=canonical_field,
                    source_path=source_path,
                    transform_kind=rule.transform_kind,
                    transform_config=rule.transform_config or None,
                    is_active=item.get('is_active', True),
                ))
            saved_count += 1
        elif existing_obj:
            db.session.delete(existing_obj)
            deleted_count += 1

    db.session.commit()
    logger.info(f"Saved/Updated {saved_count} and deleted {deleted_count} '{section}' mappings for wholesaler {wholesaler_id}.")
    return saved_count + deleted_count
