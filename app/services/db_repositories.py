# app/services/db_repositories.py
import logging
from datetime import datetime, timedelta

from sqlalchemy import func, or_

from app.models import Tour, Period, SyncLog, WholesalerApiConfig, Wholesaler
from app import db

logger = logging.getLogger(__name__)


class BaseRepository:
    """
    A small base class around one model.

    Subclasses set `__model__`; the sync orchestrator, the aggregation engine
    and the search service compose these query functions instead of building
    queries at each call site.
    """
    __model__ = None

    @classmethod
    def find(cls, pk_value):
        """Finds a single record by its primary key."""
        if cls.__model__ is None: raise NotImplementedError(f"Model not defined for {cls.__name__}")
        return db.session.get(cls.__model__, pk_value)

    @classmethod
    def find_by(cls, **kwargs):
        """Finds the first record matching the given column values."""
        return cls.__model__.query.filter_by(**kwargs).first()

    @classmethod
    def where(cls, limit=None, order_by=None, **kwargs):
        """Finds all records matching the given column values, with optional ordering."""
        query = cls.__model__.query.filter_by(**kwargs)
        if order_by is not None:
            query = query.order_by(order_by)
        if limit:
            query = query.limit(limit)
        return query.all()


class ApiConfigRepository(BaseRepository):
    __model__ = WholesalerApiConfig

    @classmethod
    def for_wholesaler(cls, wholesaler_id):
        return cls.find_by(wholesaler_id=wholesaler_id)

    @classmethod
    def active_configs(cls, wholesaler_ids=None):
        """Active configs of active wholesalers, optionally restricted to some ids."""
        query = WholesalerApiConfig.query.join(Wholesaler).filter(
            WholesalerApiConfig.is_active.is_(True), Wholesaler.is_active.is_(True)
        )
        if wholesaler_ids:
            query = query.filter(WholesalerApiConfig.wholesaler_id.in_(list(wholesaler_ids)))
        return query.order_by(WholesalerApiConfig.wholesaler_id).all()

    @classmethod
    def sync_enabled_configs(cls):
        return [c for c in cls.active_configs() if c.sync_enabled]


class TourRepository(BaseRepository):
    __model__ = Tour

    @classmethod
    def find_for_wholesaler(cls, wholesaler_id, external_id=None, wholesaler_tour_code=None):
        """Matches a synced tour by its wholesaler plus external id or the wholesaler's own tour code."""
        conditions = []
        if external_id:
            conditions.append(Tour.external_id == str(external_id))
        if wholesaler_tour_code:
            conditions.append(Tour.wholesaler_tour_code == str(wholesaler_tour_code))
        if not conditions:
            return None
        return Tour.query.filter(Tour.wholesaler_id == wholesaler_id, or_(*conditions)).first()

    @classmethod
    def generate_tour_code(cls, now=None):
        """Next free code of the form NT{YYYYMM}{seq:03d}."""
        now = now or datetime.utcnow()
        prefix = f"NT{now:%Y%m}"
        last_code = db.session.query(func.max(Tour.tour_code)).filter(Tour.tour_code.like(f"{prefix}%")).scalar()
        sequence = 1
        if last_code:
            suffix = last_code[len(prefix):]
            sequence = int(suffix) + 1 if suffix.isdigit() else 1
        return f"{prefix}{sequence:03d}"

    @classmethod
    def for_wholesaler(cls, wholesaler_id=None):
        query = Tour.query
        if wholesaler_id is not None:
            query = query.filter_by(wholesaler_id=wholesaler_id)
        return query.order_by(Tour.id).all()


class PeriodRepository(BaseRepository):
    __model__ = Period

    @classmethod
    def open_upcoming(cls, tour, today):
        """Open periods of a tour starting today or later, ordered by start date."""
        return Period.query.filter(
            Period.tour_id == tour.id,
            Period.status == 'open',
            Period.start_date >= today,
        ).order_by(Period.start_date, Period.id).all()

    @classmethod
    def match(cls, tour, external_id=None, start_date=None):
        """Finds an existing period of a tour by external id, else by start date."""
        if tour.id is None:
            return None
        if external_id:
            period = Period.query.filter_by(tour_id=tour.id, external_id=str(external_id)).first()
            if period:
                return period
        if start_date:
            return Period.query.filter_by(tour_id=tour.id, start_date=start_date).first()
        return None


class SyncLogRepository(BaseRepository):
    __model__ = SyncLog

    @classmethod
    def running_for(cls, wholesaler_id):
        return SyncLog.query.filter_by(wholesaler_id=wholesaler_id, status='running').order_by(SyncLog.id.desc()).all()

    @classmethod
    def stuck_runs(cls, timeout_minutes=None, now=None):
        """
        Running syncs whose last sign of life is older than their timeout.
        An explicit timeout_minutes overrides each run's own heartbeat_timeout_minutes.
        """
        now = now or datetime.utcnow()
        stuck = []
        for sync_log in SyncLog.query.filter_by(status='running').all():
            if timeout_minutes is not None:
                reference = sync_log.last_heartbeat_at or sync_log.started_at
                if reference is not None and now - reference > timedelta(minutes=timeout_minutes):
                    stuck.append(sync_log)
            elif sync_log.is_stuck(now):
                stuck.append(sync_log)
        return stuck

    @classmethod
    def recent(cls, limit=50, wholesaler_id=None):
        query = SyncLog.query
        if wholesaler_id is not None:
            query = query.filter_by(wholesaler_id=wholesaler_id)
        return query.order_by(SyncLog.id.desc()).limit(limit).all()
