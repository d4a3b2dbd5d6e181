# app/services/progress_tracker.py
import logging
import math
from datetime import datetime

from app import db

logger = logging.getLogger(__name__)


class SyncProgressTracker:
    """
    Keeps progress and counters of a running sync in memory and writes them,
    together with a fresh heartbeat, to the SyncLog row after every chunk.
    """

    COUNTERS = (
        'tours_received', 'tours_created', 'tours_updated', 'tours_skipped', 'tours_failed',
        'periods_received', 'periods_created', 'periods_updated', 'periods_skipped', 'periods_failed',
    )

    def __init__(self, sync_log, clock=datetime.utcnow):
        self.sync_log = sync_log
        self._clock = clock
        self.counters = {name: 0 for name in self.COUNTERS}
        self.processed_items = 0
        self.total_items = None
        self.chunk_size = None
        self.current_chunk = 0
        self.total_chunks = None
        self.current_item_code = None
        self.api_calls = 0
        self.error_count = 0

    def initialize(self, chunk_size, total_items=None):
        self.chunk_size = chunk_size
        self.set_total(total_items)
        self.heartbeat()

    def set_total(self, total_items):
        if total_items:
            self.total_items = int(total_items)
            if self.chunk_size:
                self.total_chunks = math.ceil(self.total_items / self.chunk_size)

    def increment(self, counter, amount=1):
        self.counters[counter] += amount

    def increment_progress(self, item_code=None):
        self.processed_items += 1
        self.current_item_code = item_code

    def set_api_calls(self, count):
        self.api_calls = count

    def next_chunk(self):
        self.current_chunk += 1
        logger.info(f"[{self.sync_log.sync_id}] Processing chunk {self.current_chunk}" + (f"/{self.total_chunks}" if self.total_chunks else ""))

    @property
    def progress_percent(self):
        if not self.total_items:
            return 0.0
        return round(min(100.0, self.processed_items * 100.0 / self.total_items), 2)

    def flush(self):
        """Copies the in-memory state onto the SyncLog row (no commit)."""
        log = self.sync_log
        for name, value in self.counters.items():
            setattr(log, name, value)
        log.error_count = self.error_count
        log.processed_items = self.processed_items
        log.total_items = self.total_items
        log.progress_percent = self.progress_percent
        log.current_item_code = self.current_item_code
        log.chunk_size = self.chunk_size
        log.current_chunk = self.current_chunk
        log.total_chunks = self.total_chunks
        log.api_calls_count = self.api_calls

    def heartbeat(self):
        self.flush()
        self.sync_log.last_heartbeat_at = self._clock()
        db.session.commit()

    def should_stop(self):
        """Re-reads the row: an operator cancel or a sweep that already failed the run both stop it."""
        db.session.refresh(self.sync_log, attribute_names=['cancel_requested', 'status'])
        return bool(self.sync_log.cancel_requested) or self.sync_log.status != 'running'
