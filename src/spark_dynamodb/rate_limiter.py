"""Throughput rate limiting and throttle backoff for DynamoDB requests."""

import logging
import random
import threading
import time

from botocore.exceptions import ClientError

from .errors import ThroughputExceededError

logger = logging.getLogger(__name__)

THROTTLE_ERROR_CODES = (
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
)


class RateLimiter:
    """
    Token-bucket style limiter handing out capacity units at a fixed rate.

    Each ``acquire`` reserves the next free slot and pushes the slot forward by
    ``permits / rate`` seconds, so a request waits for the capacity the previous
    request consumed. Reservation happens under a lock, so threads sharing the
    limiter never spend the same capacity twice.
    """

    def __init__(self, permits_per_second, clock=time.monotonic, sleep=time.sleep):
        """
        Args:
            permits_per_second: Refill rate, in capacity units per second
            clock: Monotonic clock returning seconds
            sleep: Function used to wait for a reserved slot
        """
        if permits_per_second <= 0:
            raise ValueError(f"permits_per_second must be positive, got {permits_per_second}")
        self.rate = float(permits_per_second)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_free = None

    @classmethod
    def divided(cls, budget, workers, **kwargs):
        """Return a limiter for one of ``workers`` workers sharing ``budget`` units per second."""
        return cls(budget / max(int(workers), 1), **kwargs)

    def reserve(self, permits=1):
        """Reserve ``permits`` and return the number of seconds to wait before using them."""
        if permits < 0:
            raise ValueError(f"permits must be non-negative, got {permits}")
        with self._lock:
            now = self._clock()
            start = now if self._next_free is None else max(now, self._next_free)
            self._next_free = start + permits / self.rate
        return start - now

    def acquire(self, permits=1):
        """Block until ``permits`` are available. Returns the seconds spent waiting."""
        wait = self.reserve(permits)
        if wait > 0:
            self._sleep(wait)
        return wait

    def __getstate__(self):
        state = self.__dict__.copy()
        del state["_lock"]
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)
        self._lock = threading.Lock()

    def __repr__(self):
        return f"RateLimiter(rate={self.rate})"


def is_throttle_error(error):
    if not isinstance(error, ClientError):
        return False
    return error.response.get("Error", {}).get("Code") in THROTTLE_ERROR_CODES


def backoff_delay(attempt, base_delay=0.05, max_delay=10.0):
    """Full-jitter exponential delay for the given zero-based retry attempt."""
    ceiling = min(max_delay, base_delay * (2 ** attempt))
    return random.uniform(0, ceiling)


def call_with_backoff(fn, operation, max_retries=10, base_delay=0.05, max_delay=10.0, sleep=time.sleep):
    """
    Call ``fn`` and retry it while DynamoDB reports throttling.

    Only throttling errors are retried; any other error propagates unchanged.

    Raises:
        ThroughputExceededError: still throttled after ``max_retries`` retries
    """
    attempt = 0
    while True:
        try:
            return fn()
        except ClientError as error:
            if not is_throttle_error(error):
                raise
            if attempt >= max_retries:
                raise ThroughputExceededError(operation, attempt + 1) from error
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning("%s throttled, retrying in %.2fs (attempt %d/%d)",
                           operation, delay, attempt + 1, max_retries)
            sleep(delay)
            attempt += 1
