# app/services/settings_service.py
import copy
import logging

from app.models import SystemSetting
from app import db

logger = logging.getLogger(__name__)

DEFAULT_SYNC_SETTINGS = {
    'respect_manual_overrides': True,
    'always_sync_fields': [],
    'never_sync_fields': [],
    'skip_past_periods': True,
    'skip_disabled_tours': True,
}

DEFAULT_PROMOTION_THRESHOLDS = {
    'fire_sale_min_percent': 30,
    'normal_promo_min_percent': 1,
}

# key -> (description, default value)
DEFAULT_SETTINGS = {
    'sync_settings': ('Global smart-sync policy applied when a wholesaler does not override it.', DEFAULT_SYNC_SETTINGS),
    'tour_aggregations': ('Global aggregation methods for tour price fields.', {}),
    'promotion_thresholds': ('Discount percentages that classify a tour as a normal promotion or a fire sale.', DEFAULT_PROMOTION_THRESHOLDS),
}


class SettingsProvider:
    """Reads operator-editable settings from the system_settings table."""

    def get(self, key, default=None):
        setting = SystemSetting.query.filter_by(key=key).first()
        if setting is None or setting.value is None:
            return copy.deepcopy(default)
        return setting.value

    def set(self, key, value, description=None):
        setting = SystemSetting.query.filter_by(key=key).first()
        if setting is None:
            setting = SystemSetting(key=key, description=description)
            db.session.add(setting)
        setting.value = value
        db.session.commit()
        logger.info(f"Setting '{key}' updated.")
        return setting


class DictSettingsProvider:
    """In-memory provider, used where no database round trip is wanted."""

    def __init__(self, values=None):
        self.values = dict(values or {})

    def get(self, key, default=None):
        if key not in self.values:
            return copy.deepcopy(default)
        return self.values[key]

    def set(self, key, value, description=None):
        self.values[key] = value


def get_sync_settings(provider):
    """Global smart-sync settings merged over the built-in defaults."""
    merged = dict(DEFAULT_SYNC_SETTINGS)
    stored = provider.get('sync_settings', {}) or {}
    merged.update({k: v for k, v in stored.items() if k in DEFAULT_SYNC_SETTINGS})
    return merged


def get_promotion_thresholds(provider):
    merged = dict(DEFAULT_PROMOTION_THRESHOLDS)
    stored = provider.get('promotion_thresholds', {}) or {}
    for key in DEFAULT_PROMOTION_THRESHOLDS:
        if stored.get(key) is not None:
            merged[key] = float(stored[key])
    return merged
