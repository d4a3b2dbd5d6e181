# app/services/sync_policy.py
import logging
from dataclasses import dataclass, field
from datetime import timedelta

from .settings_service import get_sync_settings

logger = logging.getLogger(__name__)

DISABLED_TOUR_STATUSES = {'closed', 'inactive', 'disabled', 'cancelled', 'canceled'}
PAST_PERIOD_MODES = ('skip', 'close', 'keep')


@dataclass
class SyncPolicy:
    """Decides which incoming fields and records a sync run may write."""
    respect_manual_overrides: bool = True
    always_sync_fields: set = field(default_factory=set)
    never_sync_fields: set = field(default_factory=set)
    skip_past_periods: bool = True
    skip_disabled_tours: bool = True
    past_period_handling: str = 'skip'
    past_period_threshold_days: int = 0

    @classmethod
    def from_config(cls, api_config, settings):
        """Wholesaler values win; unset (NULL) ones fall back to the global sync_settings."""
        defaults = get_sync_settings(settings)

        def pick(name):
            value = getattr(api_config, name, None) if api_config is not None else None
            return defaults[name] if value is None else value

        handling = getattr(api_config, 'past_period_handling', None) or 'skip'
        if handling not in PAST_PERIOD_MODES:
            logger.warning(f"Unknown past_period_handling '{handling}', using 'skip'.")
            handling = 'skip'

        return cls(
            respect_manual_overrides=bool(pick('respect_manual_overrides')),
            always_sync_fields=set(pick('always_sync_fields') or []),
            never_sync_fields=set(pick('never_sync_fields') or []),
            skip_past_periods=bool(pick('skip_past_periods')),
            skip_disabled_tours=bool(pick('skip_disabled_tours')),
            past_period_handling=handling,
            past_period_threshold_days=getattr(api_config, 'past_period_threshold_days', None) or 0,
        )

    def is_field_syncable(self, field_name, tour):
        if field_name in self.never_sync_fields:
            return False
        if field_name in self.always_sync_fields:
            return True
        if self.respect_manual_overrides and tour is not None and tour.is_field_overridden(field_name):
            return False
        return True

    def filter_fields(self, values, tour):
        """Splits column values into (writable, skipped_field_names) for an existing tour."""
        writable, skipped = {}, []
        for field_name, value in values.items():
            if self.is_field_syncable(field_name, tour):
                writable[field_name] = value
            else:
                skipped.append(field_name)
        return writable, skipped

    def pending_fields(self, values, tour):
        """Writable fields whose stored value differs from the incoming one, e.g. after an override is cleared."""
        writable, _ = self.filter_fields(values, tour)
        return sorted(name for name, value in writable.items() if getattr(tour, name, None) != value)

    def is_disabled_tour(self, canonical):
        if not self.skip_disabled_tours:
            return False
        status = canonical.get('status')
        if isinstance(status, str) and status.strip().lower() in DISABLED_TOUR_STATUSES:
            return True
        return canonical.get('is_active') is False

    def past_period_action(self, start_date, today):
        """'keep', 'close' or 'skip' for a period with this start date."""
        if start_date is None or not self.skip_past_periods:
            return 'keep'
        cutoff = today - timedelta(days=self.past_period_threshold_days or 0)
        if start_date >= cutoff:
            return 'keep'
        return self.past_period_handling
