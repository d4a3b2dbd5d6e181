# app/models.py
from . import db
from datetime import datetime, timedelta


class JobLog(db.Model):
    """Execution log of scheduled jobs (dispatcher, stuck-sync sweep)."""
    __tablename__ = 'job_log'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.String(255), nullable=False, index=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    status = db.Column(db.String(50), nullable=False)
    message = db.Column(db.UnicodeText, nullable=True)
    duration_s = db.Column(db.Float, nullable=True)
    details = db.Column(db.UnicodeText, nullable=True)

    def __repr__(self):
        return f"<JobLog {self.job_id} - {self.status}>"


class JobConfig(db.Model):
    __tablename__ = 'job_config'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)
    trigger_type = db.Column(db.String(50), nullable=False, default='cron')
    trigger_args = db.Column(db.JSON, nullable=False)

    is_running = db.Column(db.Boolean, nullable=False, default=False, server_default='0')
    cancellation_requested = db.Column(db.Boolean, nullable=False, default=False, server_default='0')

    def __repr__(self):
        return f"<JobConfig {self.job_id} - {'Enabled' if self.is_enabled else 'Disabled'}>"


class SystemSetting(db.Model):
    __tablename__ = 'system_settings'

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), nullable=False, unique=True, index=True)
    value = db.Column(db.JSON, nullable=True)
    description = db.Column(db.Unicode(255), nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<SystemSetting {self.key}>"


# --- WHOLESALERS & INTEGRATION CONFIG ---

class Wholesaler(db.Model):
    __tablename__ = 'wholesalers'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=False, unique=True)
    name = db.Column(db.Unicode(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    api_config = db.relationship('WholesalerApiConfig', back_populates='wholesaler', uselist=False)

    def __repr__(self):
        return f"<Wholesaler {self.code}>"


class WholesalerApiConfig(db.Model):
    """Connection, auth, scheduling and sync policy for one wholesaler."""
    __tablename__ = 'wholesaler_api_configs'

    id = db.Column(db.Integer, primary_key=True)
    wholesaler_id = db.Column(db.Integer, db.ForeignKey('wholesalers.id'), nullable=False, unique=True)

    api_base_url = db.Column(db.String(500), nullable=False)
    api_format = db.Column(db.String(20), nullable=False, default='rest')
    auth_type = db.Column(db.String(20), nullable=False, default='none')
    auth_credentials = db.Column(db.JSON, nullable=True)
    auth_header_name = db.Column(db.String(100), nullable=True)
    endpoints = db.Column(db.JSON, nullable=True)
    request_timeout_seconds = db.Column(db.Integer, nullable=False, default=30)
    retry_attempts = db.Column(db.Integer, nullable=False, default=3)
    rate_limit_per_minute = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sync_enabled = db.Column(db.Boolean, nullable=False, default=True)
    sync_method = db.Column(db.String(20), nullable=False, default='cursor')
    sync_mode = db.Column(db.String(20), nullable=False, default='single')
    schedule_incremental = db.Column(db.String(100), nullable=True, default='0 */2 * * *')
    schedule_full = db.Column(db.String(100), nullable=True, default='0 3 * * *')
    chunk_size = db.Column(db.Integer, nullable=True)
    heartbeat_timeout_minutes = db.Column(db.Integer, nullable=True)

    # Smart-sync policy. NULL means "use the global sync_settings value".
    respect_manual_overrides = db.Column(db.Boolean, nullable=True)
    always_sync_fields = db.Column(db.JSON, nullable=True)
    never_sync_fields = db.Column(db.JSON, nullable=True)
    skip_past_periods = db.Column(db.Boolean, nullable=True)
    skip_disabled_tours = db.Column(db.Boolean, nullable=True)
    past_period_handling = db.Column(db.String(10), nullable=False, default='skip')
    past_period_threshold_days = db.Column(db.Integer, nullable=False, default=0)

    aggregation_config = db.Column(db.JSON, nullable=True)

    wholesaler = db.relationship('Wholesaler', back_populates='api_config')

    def get_endpoint(self, name, default=None):
        return (self.endpoints or {}).get(name, default)

    def __repr__(self):
        return f"<WholesalerApiConfig wholesaler={self.wholesaler_id} mode={self.sync_mode}>"


class MappingRule(db.Model):
    """One canonical field <- source path correspondence for a wholesaler section."""
    __tablename__ = 'wholesaler_field_mappings'

    id = db.Column(db.Integer, primary_key=True)
    wholesaler_id = db.Column(db.Integer, db.ForeignKey('wholesalers.id'), nullable=False, index=True)
    section = db.Column(db.String(20), nullable=False)
    canonical_field = db.Column(db.String(100), nullable=False)
    source_path = db.Column(db.Unicode(500), nullable=False)
    transform_kind = db.Column(db.String(20), nullable=False, default='direct')
    transform_config = db.Column(db.JSON, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('wholesaler_id', 'section', 'canonical_field', name='_wholesaler_section_field_uc'),
    )

    def __repr__(self):
        return f"<MappingRule {self.wholesaler_id}/{self.section}: {self.canonical_field} <- {self.source_path}>"

    def to_dict(self):
        return {
            'section': self.section,
            'canonical_field': self.canonical_field,
            'source_path': self.source_path,
            'transform_kind': self.transform_kind,
            'transform_config': self.transform_config or {},
            'is_active': self.is_active,
        }


# --- REFERENCE TABLES ---

class Country(db.Model):
    __tablename__ = 'countries'

    id = db.Column(db.Integer, primary_key=True)
    iso2 = db.Column(db.String(2), nullable=True, index=True)
    iso3 = db.Column(db.String(3), nullable=True, index=True)
    name_en = db.Column(db.Unicode(255), nullable=False)
    name_th = db.Column(db.Unicode(255), nullable=True)

    def aliases(self):
        return [v for v in (self.iso2, self.iso3, self.name_en, self.name_th) if v]


class City(db.Model):
    __tablename__ = 'cities'

    id = db.Column(db.Integer, primary_key=True)
    country_id = db.Column(db.Integer, db.ForeignKey('countries.id'), nullable=True)
    name_en = db.Column(db.Unicode(255), nullable=False)
    name_th = db.Column(db.Unicode(255), nullable=True)


class Transport(db.Model):
    __tablename__ = 'transports'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(10), nullable=True, index=True)
    name = db.Column(db.Unicode(255), nullable=False)


# --- CATALOG ---

class Tour(db.Model):
    __tablename__ = 'tours'

    id = db.Column(db.Integer, primary_key=True)
    wholesaler_id = db.Column(db.Integer, db.ForeignKey('wholesalers.id'), nullable=True, index=True)
    external_id = db.Column(db.String(255), nullable=True)
    wholesaler_tour_code = db.Column(db.String(255), nullable=True)
    tour_code = db.Column(db.String(50), nullable=False, unique=True)

    title = db.Column(db.Unicode(500), nullable=False)
    description = db.Column(db.UnicodeText, nullable=True)
    highlight = db.Column(db.UnicodeText, nullable=True)
    duration_days = db.Column(db.Integer, nullable=True)
    duration_nights = db.Column(db.Integer, nullable=True)
    primary_country_id = db.Column(db.Integer, db.ForeignKey('countries.id'), nullable=True)
    transport_id = db.Column(db.Integer, db.ForeignKey('transports.id'), nullable=True)
    locations = db.Column(db.JSON, nullable=True)
    image_url = db.Column(db.String(1000), nullable=True)
    pdf_url = db.Column(db.String(1000), nullable=True)
    status = db.Column(db.String(20), nullable=False, default='draft')

    # Sync bookkeeping
    data_source = db.Column(db.String(20), nullable=False, default='manual')
    sync_status = db.Column(db.String(20), nullable=True)
    sync_locked = db.Column(db.Boolean, nullable=False, default=False)
    last_synced_at = db.Column(db.DateTime, nullable=True)
    sync_hash = db.Column(db.String(64), nullable=True)
    manual_override_fields = db.Column(db.JSON, nullable=True)

    # Derived aggregates, always recomputed from periods/offers
    price_adult = db.Column(db.Float, nullable=True)
    discount_adult = db.Column(db.Float, nullable=True)
    min_price = db.Column(db.Float, nullable=True)
    max_price = db.Column(db.Float, nullable=True)
    display_price = db.Column(db.Float, nullable=True)
    discount_amount = db.Column(db.Float, nullable=True)
    max_discount_percent = db.Column(db.Float, nullable=True)
    promotion_type = db.Column(db.String(20), nullable=False, default='none')
    has_promotion = db.Column(db.Boolean, nullable=False, default=False)
    hotel_star = db.Column(db.Integer, nullable=True)
    hotel_star_min = db.Column(db.Integer, nullable=True)
    hotel_star_max = db.Column(db.Integer, nullable=True)
    available_seats = db.Column(db.Integer, nullable=False, default=0)
    next_departure_date = db.Column(db.Date, nullable=True)
    total_departures = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    periods = db.relationship('Period', back_populates='tour', cascade='all, delete-orphan', order_by='Period.start_date')
    itineraries = db.relationship('TourItinerary', back_populates='tour', cascade='all, delete-orphan', order_by='TourItinerary.day_number')

    __table_args__ = (
        db.UniqueConstraint('wholesaler_id', 'external_id', name='_wholesaler_external_id_uc'),
    )

    def __repr__(self):
        return f"<Tour {self.tour_code} ({self.external_id})>"

    # --- manual override bookkeeping ---

    def is_field_overridden(self, field):
        return field in (self.manual_override_fields or {})

    def get_overridden_fields(self):
        return list((self.manual_override_fields or {}).keys())

    def mark_fields_as_overridden(self, fields, when=None):
        stamp = (when or datetime.utcnow()).isoformat()
        # Reassign a copy so the JSON column change is detected.
        overrides = dict(self.manual_override_fields or {})
        for field in fields:
            overrides[field] = stamp
        self.manual_override_fields = overrides

    def mark_field_as_overridden(self, field, when=None):
        self.mark_fields_as_overridden([field], when)

    def clear_field_override(self, field):
        overrides = dict(self.manual_override_fields or {})
        overrides.pop(field, None)
        self.manual_override_fields = overrides or None

    def clear_all_overrides(self):
        self.manual_override_fields = None

    def to_dict(self):
        return {
            'id': self.id,
            'tour_code': self.tour_code,
            'wholesaler_id': self.wholesaler_id,
            'external_id': self.external_id,
            'title': self.title,
            'status': self.status,
            'data_source': self.data_source,
            'sync_status': self.sync_status,
            'sync_locked': self.sync_locked,
            'last_synced_at': self.last_synced_at.isoformat() if self.last_synced_at else None,
            'manual_override_fields': self.manual_override_fields or {},
            'min_price': self.min_price,
            'max_price': self.max_price,
            'display_price': self.display_price,
            'price_adult': self.price_adult,
            'discount_adult': self.discount_adult,
            'max_discount_percent': self.max_discount_percent,
            'promotion_type': self.promotion_type,
            'hotel_star': self.hotel_star,
            'available_seats': self.available_seats,
            'next_departure_date': self.next_departure_date.isoformat() if self.next_departure_date else None,
            'total_departures': self.total_departures,
        }


class Period(db.Model):
    __tablename__ = 'periods'

    id = db.Column(db.Integer, primary_key=True)
    tour_id = db.Column(db.Integer, db.ForeignKey('tours.id'), nullable=False, index=True)
    external_id = db.Column(db.String(255), nullable=True)
    period_code = db.Column(db.String(50), nullable=True)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True)
    capacity = db.Column(db.Integer, nullable=False, default=0)
    booked = db.Column(db.Integer, nullable=False, default=0)
    available = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default='open')
    data_source = db.Column(db.String(20), nullable=False, default='manual')
    last_synced_at = db.Column(db.DateTime, nullable=True)

    tour = db.relationship('Tour', back_populates='periods')
    offer = db.relationship('Offer', back_populates='period', uselist=False, cascade='all, delete-orphan')

    def update_availability(self):
        self.available = max(0, (self.capacity or 0) - (self.booked or 0))
        if self.available == 0 and self.status == 'open':
            self.status = 'sold_out'

    def __repr__(self):
        return f"<Period {self.period_code} {self.start_date} ({self.status})>"


class Promotion(db.Model):
    __tablename__ = 'promotions'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.Unicode(255), nullable=False)
    discount_amount = db.Column(db.Float, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    def is_current(self, today):
        if not self.is_active:
            return False
        if self.start_date and today < self.start_date:
            return False
        if self.end_date and today > self.end_date:
            return False
        return True


class Offer(db.Model):
    __tablename__ = 'offers'

    id = db.Column(db.Integer, primary_key=True)
    period_id = db.Column(db.Integer, db.ForeignKey('periods.id'), nullable=False, unique=True)
    currency = db.Column(db.String(3), nullable=False, default='THB')
    price_adult = db.Column(db.Float, nullable=True)
    discount_adult = db.Column(db.Float, nullable=True)
    price_child = db.Column(db.Float, nullable=True)
    price_child_nobed = db.Column(db.Float, nullable=True)
    price_infant = db.Column(db.Float, nullable=True)
    price_single = db.Column(db.Float, nullable=True)
    deposit = db.Column(db.Float, nullable=True)
    promotion_id = db.Column(db.Integer, db.ForeignKey('promotions.id'), nullable=True)

    period = db.relationship('Period', back_populates='offer')
    promotion = db.relationship('Promotion')

    def effective_discount(self, today):
        """Largest of the offer's own discount and a current linked promotion."""
        candidates = [self.discount_adult or 0]
        if self.promotion is not None and self.promotion.is_current(today):
            candidates.append(self.promotion.discount_amount or 0)
        return max(candidates)


class TourItinerary(db.Model):
    __tablename__ = 'tour_itineraries'

    id = db.Column(db.Integer, primary_key=True)
    tour_id = db.Column(db.Integer, db.ForeignKey('tours.id'), nullable=False, index=True)
    external_id = db.Column(db.String(255), nullable=True)
    day_number = db.Column(db.Integer, nullable=False)
    title = db.Column(db.Unicode(500), nullable=True)
    description = db.Column(db.UnicodeText, nullable=True)
    places = db.Column(db.JSON, nullable=True)
    hotel_name = db.Column(db.Unicode(255), nullable=True)
    hotel_star = db.Column(db.Integer, nullable=True)
    has_breakfast = db.Column(db.Boolean, nullable=False, default=False)
    has_lunch = db.Column(db.Boolean, nullable=False, default=False)
    has_dinner = db.Column(db.Boolean, nullable=False, default=False)
    data_source = db.Column(db.String(20), nullable=False, default='manual')
    last_synced_at = db.Column(db.DateTime, nullable=True)

    tour = db.relationship('Tour', back_populates='itineraries')


# --- SYNC BOOKKEEPING ---

class SyncCursor(db.Model):
    __tablename__ = 'sync_cursors'

    id = db.Column(db.Integer, primary_key=True)
    wholesaler_id = db.Column(db.Integer, db.ForeignKey('wholesalers.id'), nullable=False)
    sync_type = db.Column(db.String(20), nullable=False, default='incremental')
    cursor_value = db.Column(db.String(500), nullable=True)
    cursor_type = db.Column(db.String(20), nullable=False, default='string')
    last_sync_id = db.Column(db.String(100), nullable=True)
    last_synced_at = db.Column(db.DateTime, nullable=True)
    total_received = db.Column(db.Integer, nullable=False, default=0)
    last_batch_count = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint('wholesaler_id', 'sync_type', name='_cursor_wholesaler_type_uc'),
    )

    @classmethod
    def get_or_create(cls, wholesaler_id, sync_type='incremental'):
        cursor = cls.query.filter_by(wholesaler_id=wholesaler_id, sync_type=sync_type).first()
        if cursor is None:
            cursor = cls(wholesaler_id=wholesaler_id, sync_type=sync_type, total_received=0, last_batch_count=0)
            db.session.add(cursor)
            db.session.flush()
        return cursor

    def update_after_sync(self, new_cursor, batch_count, sync_id):
        if new_cursor is not None:
            self.cursor_value = str(new_cursor)
        self.last_sync_id = sync_id
        self.last_synced_at = datetime.utcnow()
        self.last_batch_count = batch_count
        self.total_received = (self.total_received or 0) + batch_count

    def reset(self):
        self.cursor_value = None
        self.last_batch_count = 0

    def __repr__(self):
        return f"<SyncCursor {self.wholesaler_id}/{self.sync_type} @ {self.cursor_value}>"


class SyncLog(db.Model):
    """One row per sync run of one wholesaler."""
    __tablename__ = 'sync_logs'
    __table_args__ = (
        # At most one running sync per wholesaler; closes the gap between the overlap check and the insert.
        db.Index('uq_sync_logs_one_running', 'wholesaler_id', unique=True,
                 sqlite_where=db.text("status = 'running'"),
                 postgresql_where=db.text("status = 'running'"),
                 mssql_where=db.text("status = 'running'")),
    )

    id = db.Column(db.Integer, primary_key=True)
    sync_id = db.Column(db.String(100), nullable=False, unique=True, index=True)
    wholesaler_id = db.Column(db.Integer, db.ForeignKey('wholesalers.id'), nullable=False, index=True)
    sync_type = db.Column(db.String(20), nullable=False, default='incremental')
    status = db.Column(db.String(20), nullable=False, default='pending', index=True)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    duration_seconds = db.Column(db.Float, nullable=True)
    message = db.Column(db.UnicodeText, nullable=True)

    tours_received = db.Column(db.Integer, nullable=False, default=0)
    tours_created = db.Column(db.Integer, nullable=False, default=0)
    tours_updated = db.Column(db.Integer, nullable=False, default=0)
    tours_skipped = db.Column(db.Integer, nullable=False, default=0)
    tours_failed = db.Column(db.Integer, nullable=False, default=0)
    periods_received = db.Column(db.Integer, nullable=False, default=0)
    periods_created = db.Column(db.Integer, nullable=False, default=0)
    periods_updated = db.Column(db.Integer, nullable=False, default=0)
    periods_skipped = db.Column(db.Integer, nullable=False, default=0)
    periods_failed = db.Column(db.Integer, nullable=False, default=0)
    error_count = db.Column(db.Integer, nullable=False, default=0)
    error_summary = db.Column(db.JSON, nullable=True)

    ack_sent = db.Column(db.Boolean, nullable=False, default=False)
    ack_sent_at = db.Column(db.DateTime, nullable=True)
    ack_accepted = db.Column(db.Boolean, nullable=True)

    last_heartbeat_at = db.Column(db.DateTime, nullable=True)
    heartbeat_timeout_minutes = db.Column(db.Integer, nullable=False, default=30)
    total_items = db.Column(db.Integer, nullable=True)
    processed_items = db.Column(db.Integer, nullable=False, default=0)
    progress_percent = db.Column(db.Float, nullable=False, default=0)
    current_item_code = db.Column(db.String(255), nullable=True)
    chunk_size = db.Column(db.Integer, nullable=True)
    current_chunk = db.Column(db.Integer, nullable=False, default=0)
    total_chunks = db.Column(db.Integer, nullable=True)
    api_calls_count = db.Column(db.Integer, nullable=False, default=0)

    cancel_requested = db.Column(db.Boolean, nullable=False, default=False)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.Unicode(500), nullable=True)

    errors = db.relationship('SyncErrorLog', back_populates='sync_log', cascade='all, delete-orphan')

    def is_stuck(self, now=None):
        if self.status != 'running':
            return False
        reference = self.last_heartbeat_at or self.started_at
        if reference is None:
            return False
        now = now or datetime.utcnow()
        return now - reference > timedelta(minutes=self.heartbeat_timeout_minutes or 30)

    def __repr__(self):
        return f"<SyncLog {self.sync_id} - {self.status}>"

    def to_dict(self):
        return {
            'sync_id': self.sync_id,
            'wholesaler_id': self.wholesaler_id,
            'sync_type': self.sync_type,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration_seconds': self.duration_seconds,
            'message': self.message,
            'tours': {
                'received': self.tours_received, 'created': self.tours_created, 'updated': self.tours_updated,
                'skipped': self.tours_skipped, 'failed': self.tours_failed,
            },
            'periods': {
                'received': self.periods_received, 'created': self.periods_created, 'updated': self.periods_updated,
                'skipped': self.periods_skipped, 'failed': self.periods_failed,
            },
            'error_count': self.error_count,
            'error_summary': self.error_summary,
            'progress': {
                'processed_items': self.processed_items, 'total_items': self.total_items,
                'percent': self.progress_percent, 'current_item_code': self.current_item_code,
                'current_chunk': self.current_chunk, 'total_chunks': self.total_chunks,
                'api_calls': self.api_calls_count,
            },
            'last_heartbeat_at': self.last_heartbeat_at.isoformat() if self.last_heartbeat_at else None,
            'ack_sent': self.ack_sent,
            'ack_accepted': self.ack_accepted,
            'cancel_requested': self.cancel_requested,
            'cancel_reason': self.cancel_reason,
        }


class SyncErrorLog(db.Model):
    __tablename__ = 'sync_error_logs'

    id = db.Column(db.Integer, primary_key=True)
    sync_log_id = db.Column(db.Integer, db.ForeignKey('sync_logs.id'), nullable=False, index=True)
    wholesaler_id = db.Column(db.Integer, nullable=False, index=True)
    entity_type = db.Column(db.String(20), nullable=True)
    entity_code = db.Column(db.String(255), nullable=True)
    section = db.Column(db.String(20), nullable=True)
    field_name = db.Column(db.String(100), nullable=True)
    error_type = db.Column(db.String(20), nullable=False, default='unknown')
    error_message = db.Column(db.UnicodeText, nullable=False)
    raw_value = db.Column(db.UnicodeText, nullable=True)
    expected_type = db.Column(db.String(50), nullable=True)
    stack_trace = db.Column(db.UnicodeText, nullable=True)
    is_resolved = db.Column(db.Boolean, nullable=False, default=False)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolved_by = db.Column(db.Unicode(255), nullable=True)
    resolution_notes = db.Column(db.UnicodeText, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    sync_log = db.relationship('SyncLog', back_populates='errors')

    def resolve(self, user=None, notes=None):
        self.is_resolved = True
        self.resolved_at = datetime.utcnow()
        self.resolved_by = user
        self.resolution_notes = notes

    def to_dict(self):
        return {
            'id': self.id,
            'sync_id': self.sync_log.sync_id if self.sync_log else None,
            'entity_type': self.entity_type,
            'entity_code': self.entity_code,
            'section': self.section,
            'field_name': self.field_name,
            'error_type': self.error_type,
            'error_message': self.error_message,
            'raw_value': self.raw_value,
            'expected_type': self.expected_type,
            'is_resolved': self.is_resolved,
            'resolved_by': self.resolved_by,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
