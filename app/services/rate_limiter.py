# app/services/rate_limiter.py
import logging
import time
from collections import deque

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 60


class SyncRateLimiter:
    """
    Client-side throttle for one wholesaler API.

    Keeps a sliding one-minute window of request timestamps, enforces a minimum
    delay between consecutive requests, and backs off exponentially after the
    wholesaler answers 429.
    """

    def __init__(self, requests_per_minute=None, min_delay_seconds=0.0, clock=time.monotonic, sleep=time.sleep):
        self.requests_per_minute = requests_per_minute
        self.min_delay_seconds = min_delay_seconds
        self._clock = clock
        self._sleep = sleep
        self._window = deque()
        self._last_request_at = None
        self.backoff_attempts = 0

    def wait(self):
        """Blocks until a request may be sent, then records it."""
        now = self._clock()
        while self._window and now - self._window[0] >= 60:
            self._window.popleft()

        delay = 0.0
        if self.requests_per_minute and len(self._window) >= self.requests_per_minute:
            delay = 60 - (now - self._window[0])
        if self._last_request_at is not None and self.min_delay_seconds:
            delay = max(delay, self.min_delay_seconds - (now - self._last_request_at))

        if delay > 0:
            logger.debug(f"Rate limit reached, sleeping {delay:.2f}s.")
            self._sleep(delay)
            now = self._clock()

        self._window.append(now)
        self._last_request_at = now

    def backoff(self):
        """Sleeps after a 429 response. Returns the delay used."""
        self.backoff_attempts += 1
        delay = min(MAX_BACKOFF_SECONDS, 2 ** self.backoff_attempts)
        logger.warning(f"Wholesaler rate limit hit, backing off {delay}s (attempt {self.backoff_attempts}).")
        self._sleep(delay)
        return delay

    def reset_backoff(self):
        self.backoff_attempts = 0
