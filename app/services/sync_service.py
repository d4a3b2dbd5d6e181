# app/services/sync_service.py
import hashlib
import json
import logging
import re
import time
import uuid
from collections import Counter
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from app.models import SyncLog, SyncCursor, Tour, Period, Offer, TourItinerary
from app import db
from app.utils.dates import local_today
from .adapters import AdapterFactory
from .aggregation_service import AggregationService
from .canonical_fields import TOUR_FIELDS, PERIOD_FIELDS, OFFER_FIELDS, ITINERARY_FIELDS, project
from .db_repositories import ApiConfigRepository, TourRepository, PeriodRepository, SyncLogRepository
from .lookup_resolver import LookupResolver
from .mapping_service import MappingNotFoundError
from .progress_tracker import SyncProgressTracker
from .settings_service import SettingsProvider
from .sync_error_handler import SyncErrorHandler, ItemValidationError, AdapterCallError
from .sync_policy import SyncPolicy
from .transform_service import TransformService, RAW_KEY

logger = logging.getLogger(__name__)

SYNC_TYPES = ('incremental', 'full')

_PLACEHOLDER_RE = re.compile(r'\{(\w+)\}')

PERIOD_STATUS_MAP = {
    'open': 'open', 'available': 'open', 'active': 'open',
    'closed': 'closed', 'inactive': 'closed',
    'sold_out': 'sold_out', 'soldout': 'sold_out', 'full': 'sold_out',
    'cancelled': 'cancelled', 'canceled': 'cancelled',
}


class SyncAlreadyRunningError(Exception):
    """Another run for the same wholesaler is still alive."""
    pass


class SyncAbortedError(Exception):
    """A run-level failure: the run stops and the cursor stays where it was."""
    pass


def generate_sync_id(now=None):
    now = now or datetime.utcnow()
    return f"sync_{now:%Y%m%d_%H%M%S}_{uuid.uuid4().hex[:6]}"


def map_period_status(value):
    if value is None:
        return 'open'
    return PERIOD_STATUS_MAP.get(str(value).strip().lower().replace(' ', '_'), 'open')


def build_endpoint(template, canonical, raw):
    """Fills {field} placeholders from the transformed record, falling back to the raw one."""
    def replace(match):
        name = match.group(1)
        value = canonical.get(name)
        if value in (None, '') and isinstance(raw, dict):
            value = raw.get(name)
        if value in (None, ''):
            raise MappingNotFoundError(f"Cannot build endpoint '{template}': no value for '{name}'.")
        return str(value)
    return _PLACEHOLDER_RE.sub(replace, template)


def compute_sync_hash(tour_values, periods, itineraries):
    payload = {
        'tour': tour_values,
        'periods': [{k: v for k, v in p.items() if k != RAW_KEY} for p in periods],
        'itineraries': [{k: v for k, v in i.items() if k != RAW_KEY} for i in itineraries],
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str, ensure_ascii=False).encode('utf-8')).hexdigest()


def mark_run_failed(sync_log, reason, now=None):
    now = now or datetime.utcnow()
    sync_log.status = 'failed'
    sync_log.cancelled_at = now
    sync_log.cancel_reason = reason
    sync_log.completed_at = now
    if sync_log.started_at:
        sync_log.duration_seconds = (now - sync_log.started_at).total_seconds()


def cancel_stuck_syncs(timeout_minutes=None, dry_run=False, now=None):
    """
    Fails every running sync whose heartbeat is older than its timeout.
    Returns the sync_ids that were (or, with dry_run, would be) cancelled.
    """
    now = now or datetime.utcnow()
    stuck = SyncLogRepository.stuck_runs(timeout_minutes=timeout_minutes, now=now)
    cancelled = []
    for sync_log in stuck:
        minutes = timeout_minutes if timeout_minutes is not None else (sync_log.heartbeat_timeout_minutes or 30)
        if dry_run:
            logger.info(f"[dry-run] Would cancel stuck sync {sync_log.sync_id} (wholesaler {sync_log.wholesaler_id}).")
        else:
            mark_run_failed(sync_log, f"Heartbeat timeout after {minutes} minutes of inactivity", now)
            logger.warning(f"Cancelled stuck sync {sync_log.sync_id} (wholesaler {sync_log.wholesaler_id}).")
        cancelled.append(sync_log.sync_id)
    if not dry_run and cancelled:
        db.session.commit()
    return cancelled


class SyncService:
    """
    Drives sync runs: fetch pages from the wholesaler adapter, transform each
    tour, persist tours/periods/offers/itineraries, then recompute aggregates.

    Collaborators are injected so tests can swap the adapter and settings.
    """

    def __init__(self, settings=None, adapter_factory=None, aggregation_service=None, clock=datetime.utcnow, today=None):
        self.settings = settings or SettingsProvider()
        self.adapter_factory = adapter_factory or AdapterFactory.create
        self.aggregation = aggregation_service or AggregationService(self.settings, today=today)
        self._clock = clock
        self._today = today

    def today(self):
        if self._today is not None:
            return self._today() if callable(self._today) else self._today
        return local_today(current_app.config['APP_TIMEZONE'])

    # --- run lifecycle ---

    def start_run(self, api_config, sync_type='incremental'):
        """Creates the SyncLog row, refusing to overlap a live run of the same wholesaler."""
        if sync_type not in SYNC_TYPES:
            raise ValueError(f"Unknown sync type '{sync_type}'.")
        now = self._clock()
        new_sync_id = generate_sync_id(now)
        for running in SyncLogRepository.running_for(api_config.wholesaler_id):
            if not running.is_stuck(now):
                raise SyncAlreadyRunningError(
                    f"Sync {running.sync_id} for wholesaler {api_config.wholesaler_id} is still running "
                    f"(last heartbeat {running.last_heartbeat_at})."
                )
            logger.warning(f"Found stuck sync {running.sync_id}; marking it failed before starting a new run.")
            mark_run_failed(running, f"Heartbeat timeout, superseded by {new_sync_id}", now)
        db.session.flush()

        sync_log = SyncLog(
            sync_id=new_sync_id,
            wholesaler_id=api_config.wholesaler_id,
            sync_type=sync_type,
            status='running',
            started_at=now,
            last_heartbeat_at=now,
            heartbeat_timeout_minutes=api_config.heartbeat_timeout_minutes
            or current_app.config.get('SYNC_HEARTBEAT_TIMEOUT_MINUTES', 30),
        )
        db.session.add(sync_log)
        try:
            db.session.commit()
        except IntegrityError:
            # Another worker inserted its running row after the check above.
            db.session.rollback()
            raise SyncAlreadyRunningError(f"Another sync for wholesaler {api_config.wholesaler_id} started concurrently.")
        logger.info(f"[{sync_log.sync_id}] Started {sync_type} sync for wholesaler {api_config.wholesaler_id}.")
        return sync_log

    def run(self, wholesaler_id, sync_type='incremental', record_limit=None):
        """Runs one sync for one wholesaler and returns its finished SyncLog."""
        api_config = ApiConfigRepository.for_wholesaler(wholesaler_id)
        if api_config is None:
            raise ValueError(f"No API config found for wholesaler {wholesaler_id}.")

        sync_log = self.start_run(api_config, sync_type)
        sync_id = sync_log.sync_id
        start_time = time.time()
        tracker = SyncProgressTracker(sync_log, clock=self._clock)
        errors = SyncErrorHandler(sync_log)
        synced_codes = []
        cancelled = False

        try:
            policy = SyncPolicy.from_config(api_config, self.settings)
            transformer = TransformService.for_wholesaler(wholesaler_id, api_config, LookupResolver())
            adapter = self.adapter_factory(api_config)
            chunk_size = api_config.chunk_size or current_app.config.get('SYNC_DEFAULT_CHUNK_SIZE', 50)
            max_pages = current_app.config.get('SYNC_MAX_PAGES', 500)
            tracker.initialize(chunk_size)

            cursor = SyncCursor.get_or_create(wholesaler_id, sync_type)
            if sync_type == 'full':
                cursor.reset()
                logger.info(f"[{sync_id}] Full sync: cursor reset.")
            db.session.commit()
            page_cursor = cursor.cursor_value

            pages = 0
            processed = 0
            while True:
                if tracker.should_stop():
                    cancelled = True
                    logger.warning(f"[{sync_id}] Cancellation requested. Stopping before chunk {pages + 1}.")
                    break

                result = adapter.fetch_tours(cursor=page_cursor)
                tracker.set_api_calls(adapter.api_calls)
                if not result.success:
                    if pages == 0:
                        raise SyncAbortedError(f"Adapter error on first page ({result.error_code}): {result.error_message}")
                    errors.record(AdapterCallError(result.error_message, result.error_code), entity_type='page', entity_code=page_cursor)
                    tracker.error_count = len(errors.errors)
                    db.session.commit()
                    logger.error(f"[{sync_id}] Page fetch failed after {pages} pages, ending run: {result.error_message}")
                    break

                pages += 1
                tracker.next_chunk()
                if result.total_count:
                    tracker.set_total(result.total_count)

                chunk = result.tours
                if record_limit:
                    chunk = chunk[:max(0, record_limit - processed)]
                truncated = len(chunk) < len(result.tours)
                tracker.increment('tours_received', len(chunk))

                for raw_tour in chunk:
                    code = self._process_tour(raw_tour, api_config, policy, transformer, adapter, tracker, errors, sync_id)
                    if code:
                        synced_codes.append(code)
                    processed += 1
                    tracker.increment_progress(code)
                    tracker.set_api_calls(adapter.api_calls)

                # The chunk is fully processed, even if some items failed: only now may the cursor move.
                # A chunk cut short by the record limit keeps the cursor on its page so the rest is fetched again.
                cursor = SyncCursor.get_or_create(wholesaler_id, sync_type)
                cursor.update_after_sync(None if truncated else result.next_cursor, len(chunk), sync_id)
                tracker.error_count = len(errors.errors)
                tracker.heartbeat()

                if not result.should_continue():
                    break
                if record_limit and processed >= record_limit:
                    logger.warning(f"[{sync_id}] Record limit {record_limit} reached.")
                    break
                if pages >= max_pages:
                    logger.warning(f"[{sync_id}] Reached SYNC_MAX_PAGES={max_pages}; remaining pages wait for the next run.")
                    break
                page_cursor = result.next_cursor

            if synced_codes and not cancelled:
                self._acknowledge(adapter, synced_codes, sync_log)

            self._finish(sync_log, tracker, errors, start_time, cancelled)

        except Exception as e:
            db.session.rollback()
            logger.error(f"[{sync_id}] Sync failed: {e}", exc_info=True)
            tracker.error_count = len(errors.errors)
            tracker.flush()
            sync_log.status = 'failed'
            sync_log.message = f"Sync failed: {e}"[:1000]
            sync_log.error_summary = errors.get_summary()
            sync_log.completed_at = self._clock()
            sync_log.duration_seconds = time.time() - start_time
            db.session.commit()

        return sync_log

    def _finish(self, sync_log, tracker, errors, start_time, cancelled):
        tracker.error_count = len(errors.errors)
        tracker.flush()
        summary = errors.get_summary()
        sync_log.error_summary = summary
        sync_log.completed_at = self._clock()
        sync_log.duration_seconds = time.time() - start_time

        if cancelled:
            if sync_log.status == 'running':
                sync_log.status = 'failed'
                sync_log.cancelled_at = sync_log.completed_at
                sync_log.cancel_reason = sync_log.cancel_reason or 'Cancelled by operator request'
            status_note = f"cancelled ({sync_log.cancel_reason})"
        elif summary['total'] > 0:
            sync_log.status = 'partial'
            status_note = 'partial'
        else:
            sync_log.status = 'completed'
            status_note = 'completed'

        sync_log.message = (
            f"Sync {status_note}. Tours created: {tracker.counters['tours_created']}, "
            f"updated: {tracker.counters['tours_updated']}, skipped: {tracker.counters['tours_skipped']}, "
            f"failed: {tracker.counters['tours_failed']}. Errors: {summary['total']}."
        )
        if summary['total'] and errors.should_retry_sync():
            sync_log.message += " Most errors are transient; a retry is recommended."
        db.session.commit()
        logger.info(f"[{sync_log.sync_id}] {sync_log.message}")

    def _acknowledge(self, adapter, synced_codes, sync_log):
        if adapter.api_config.sync_method != 'ack_callback':
            return
        try:
            ack = adapter.acknowledge_synced(synced_codes, sync_log.sync_id)
        except Exception as e:
            logger.error(f"[{sync_log.sync_id}] Acknowledgement failed: {e}", exc_info=True)
            return
        sync_log.ack_sent = ack.success
        sync_log.ack_sent_at = self._clock()
        sync_log.ack_accepted = ack.accepted if ack.success else None
        if not ack.success:
            logger.warning(f"[{sync_log.sync_id}] Wholesaler did not take the acknowledgement: {ack.error_message}")
        db.session.commit()

    # --- per tour ---

    def _process_tour(self, raw_tour, api_config, policy, transformer, adapter, tracker, errors, sync_id):
        """Transforms and persists one tour in its own transaction. Returns its external id, or None."""
        wholesaler_id = api_config.wholesaler_id
        code = None
        deferred_errors = []
        staged_counts = Counter()
        try:
            transformed = transformer.transform_tour(raw_tour)
            canonical = transformed['tour']
            code = canonical.get('external_id') or canonical.get('wholesaler_tour_code')
            if code in (None, ''):
                raise ItemValidationError("Tour has no external_id or wholesaler_tour_code.", field='external_id')
            code = str(code)

            if policy.is_disabled_tour(canonical):
                logger.info(f"[{sync_id}] Skipping disabled tour {code}.")
                tracker.increment('tours_skipped')
                return None

            tour = TourRepository.find_for_wholesaler(wholesaler_id, code, canonical.get('wholesaler_tour_code'))
            if tour is not None and (tour.data_source == 'manual' or tour.sync_locked):
                logger.info(f"[{sync_id}] Skipping tour {code}: {'locked' if tour.sync_locked else 'manually managed'}.")
                tracker.increment('tours_skipped')
                return None

            periods = transformed['periods']
            itineraries = transformed['itineraries']
            if api_config.sync_mode == 'two_phase':
                periods = self._fetch_periods(api_config, adapter, transformer, canonical, raw_tour)
                if api_config.get_endpoint('itineraries'):
                    itineraries = self._fetch_itineraries(api_config, adapter, transformer, canonical, raw_tour)

            values = project(canonical, TOUR_FIELDS)
            if values.get('duration_days') and 'duration_nights' not in values:
                values['duration_nights'] = max(0, values['duration_days'] - 1)

            now = self._clock()
            new_hash = compute_sync_hash(values, periods, itineraries)
            if tour is not None and tour.sync_hash == new_hash and not policy.pending_fields(values, tour):
                tour.last_synced_at = now
                self.aggregation.recalculate(tour, api_config)
                db.session.commit()
                tracker.increment('tours_skipped')
                return code

            is_new = tour is None
            if is_new:
                if not values.get('title'):
                    raise ItemValidationError(f"New tour {code} has no title.", field='title')
                tour = Tour(
                    wholesaler_id=wholesaler_id,
                    external_id=code,
                    tour_code=TourRepository.generate_tour_code(now),
                    data_source='api',
                    status='draft',
                )
                db.session.add(tour)
                for field, value in values.items():
                    setattr(tour, field, value)
            else:
                writable, protected = policy.filter_fields(values, tour)
                if protected:
                    logger.info(f"[{sync_id}] Tour {code}: keeping operator edits of {sorted(protected)}.")
                for field, value in writable.items():
                    setattr(tour, field, value)

            tour.sync_status = 'active'
            tour.last_synced_at = now
            tour.sync_hash = new_hash
            db.session.flush()

            self._sync_periods(tour, periods, policy, tracker, deferred_errors, staged_counts, now)
            self._sync_itineraries(tour, itineraries, now)
            db.session.flush()

            self.aggregation.recalculate(tour, api_config)
            db.session.commit()
            tracker.increment('tours_created' if is_new else 'tours_updated')
            # Period writes only count once their tour is committed.
            for name, amount in staged_counts.items():
                tracker.increment(name, amount)
            return code

        except Exception as e:
            db.session.rollback()
            tracker.increment('tours_failed')
            errors.record(e, entity_type='tour', entity_code=code, section='tour',
                          raw_value=raw_tour if not getattr(e, 'value', None) else None)
            db.session.commit()
            return None

        finally:
            if deferred_errors:
                for exc, period_code, raw_period in deferred_errors:
                    errors.record(exc, entity_type='period', entity_code=period_code, section='departure', raw_value=raw_period)
                db.session.commit()
            tracker.error_count = len(errors.errors)

    def _fetch_periods(self, api_config, adapter, transformer, canonical, raw_tour):
        template = api_config.get_endpoint('periods')
        if not template:
            raise MappingNotFoundError("Two-phase sync requires a 'periods' endpoint template.")
        result = adapter.fetch_periods(build_endpoint(template, canonical, raw_tour))
        if not result.success:
            raise AdapterCallError(f"Fetching periods failed: {result.error_message}", result.error_code)
        periods = transformer.extract_fetched_items(result.periods, 'departure')
        return transformer.to_canonical_many(periods, 'departure')

    def _fetch_itineraries(self, api_config, adapter, transformer, canonical, raw_tour):
        endpoint = build_endpoint(api_config.get_endpoint('itineraries'), canonical, raw_tour)
        result = adapter.fetch_itineraries(endpoint)
        if not result.success:
            raise AdapterCallError(f"Fetching itineraries failed: {result.error_message}", result.error_code)
        itineraries = transformer.extract_fetched_items(result.itineraries, 'itinerary')
        return transformer.to_canonical_many(itineraries, 'itinerary')

    def _sync_periods(self, tour, periods, policy, tracker, deferred_errors, staged_counts, now):
        today = self.today()
        tracker.increment('periods_received', len(periods))
        for canonical in periods:
            external_id = canonical.get('external_id')
            try:
                period_values = project(canonical, PERIOD_FIELDS)
                offer_values = project(canonical, OFFER_FIELDS)
                start_date = period_values.get('start_date')
                if start_date is None:
                    raise ItemValidationError("Period has no start_date.", field='start_date', value=canonical.get('start_date'))
            except (ItemValidationError, ValueError) as e:
                tracker.increment('periods_failed')
                deferred_errors.append((e, external_id, canonical.get(RAW_KEY)))
                continue

            action = policy.past_period_action(start_date, today)
            if action == 'skip':
                tracker.increment('periods_skipped')
                continue

            period = PeriodRepository.match(tour, external_id, start_date)
            is_new = period is None
            if is_new:
                period = Period(tour=tour, start_date=start_date, data_source='api')
                db.session.add(period)

            if external_id not in (None, ''):
                period.external_id = str(external_id)
            period.start_date = start_date
            if 'end_date' in period_values:
                period.end_date = period_values['end_date']
            period.period_code = period_values.get('period_code') or period.period_code or f"P{start_date:%y%m%d}"

            capacity = max(0, period_values.get('capacity') or 0) if 'capacity' in period_values else (period.capacity or 0)
            if 'booked' in period_values:
                booked = max(0, period_values['booked'] or 0)
            elif 'available' in period_values:
                available = max(0, period_values['available'] or 0)
                if not capacity:
                    capacity = available
                booked = max(0, capacity - available)
            else:
                booked = period.booked or 0
            period.capacity = capacity
            period.booked = booked

            period.status = 'closed' if action == 'close' else map_period_status(canonical.get('status'))
            period.update_availability()
            period.last_synced_at = now

            offer = period.offer
            if offer is None:
                offer = Offer(period=period, currency='THB')
                db.session.add(offer)
            for field, value in offer_values.items():
                setattr(offer, field, value)
            if not offer.currency:
                offer.currency = 'THB'

            staged_counts['periods_created' if is_new else 'periods_updated'] += 1

    def _sync_itineraries(self, tour, itineraries, now):
        existing_by_external = {it.external_id: it for it in tour.itineraries if it.external_id}
        existing_by_day = {it.day_number: it for it in tour.itineraries}
        next_day = 1
        for canonical in itineraries:
            values = project(canonical, ITINERARY_FIELDS)
            day_number = values.get('day_number') or next_day
            next_day = day_number + 1
            external_id = canonical.get('external_id')
            external_id = str(external_id) if external_id not in (None, '') else None

            itinerary = existing_by_external.get(external_id) if external_id else None
            if itinerary is None:
                itinerary = existing_by_day.get(day_number)
            if itinerary is None:
                itinerary = TourItinerary(tour=tour, day_number=day_number, data_source='api')
                db.session.add(itinerary)
                existing_by_day[day_number] = itinerary

            for field, value in values.items():
                setattr(itinerary, field, value)
            itinerary.day_number = day_number
            itinerary.external_id = external_id or itinerary.external_id
            itinerary.description = itinerary.description or itinerary.title or f"Day {day_number}"
            itinerary.last_synced_at = now

    # --- batch ---

    def sync_all(self, sync_type='incremental', record_limit=None):
        """Runs a sync for every sync-enabled wholesaler, one after another."""
        results = []
        for api_config in ApiConfigRepository.sync_enabled_configs():
            wholesaler_id = api_config.wholesaler_id
            try:
                results.append(self.run(wholesaler_id, sync_type, record_limit=record_limit))
            except SyncAlreadyRunningError as e:
                logger.warning(str(e))
        return results
