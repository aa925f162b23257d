"""
Retry and rate-limiting decorators for the external vision service.

Both wrap the single vision call; the extraction pipeline itself never
retries.
"""

import time
import random
import logging
import functools
import threading
from collections import deque
from typing import Any, Callable, Deque, Optional, Tuple, Type

from ..errors import VATExtractionError

logger = logging.getLogger(__name__)


def retry_with_backoff(
    max_retries: int = 2,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    jitter_max: float = 0.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (VATExtractionError,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
):
    """
    Retry decorator with exponential backoff.

    Only errors whose ``recoverable`` attribute is true are retried; anything
    else is re-raised immediately.

    Args:
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry, doubled on every retry
        max_delay: Upper bound for a single delay
        jitter_max: Maximum random jitter added to each delay
        retryable_exceptions: Exception types considered for retry
        on_retry: Optional callback(attempt, exception) called before each retry
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            attempts = max_retries + 1
            for attempt in range(attempts):
                try:
                    return func(*args, **kwargs)
                except retryable_exceptions as e:
                    if not getattr(e, "recoverable", False) or attempt == attempts - 1:
                        if attempt:
                            logger.error(f"{func.__name__} failed after {attempt + 1} attempts: {e}")
                        raise

                    delay = min(max_delay, base_delay * (2 ** attempt)) + random.uniform(0, jitter_max)
                    if on_retry:
                        on_retry(attempt + 1, e)
                    logger.warning(
                        f"{func.__name__} failed with {type(e).__name__}: {e}, "
                        f"retrying in {delay:.1f}s (attempt {attempt + 1}/{attempts})"
                    )
                    time.sleep(delay)
        return wrapper
    return decorator


class RateLimiter:
    """
    Sliding-window rate limiter usable as a decorator.

    Calls beyond ``requests_per_minute`` within the last 60 seconds block
    until the oldest call leaves the window.

    Args:
        requests_per_minute: Allowed calls per 60-second window
        clock: Monotonic time source
        sleep: Sleep function
    """

    WINDOW_SECONDS = 60.0

    def __init__(
        self,
        requests_per_minute: int = 50,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.requests_per_minute = requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self._calls: Deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> float:
        """Wait for a free slot; returns the seconds spent waiting."""
        waited = 0.0
        with self._lock:
            now = self._clock()
            while self._calls and now - self._calls[0] >= self.WINDOW_SECONDS:
                self._calls.popleft()

            if len(self._calls) >= self.requests_per_minute:
                waited = self.WINDOW_SECONDS - (now - self._calls[0])
                logger.info(f"Vision rate limit reached, waiting {waited:.1f}s")
                self._sleep(waited)
                self._calls.popleft()
                now = self._clock()

            self._calls.append(now)
        return waited

    def __call__(self, func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            self.acquire()
            return func(*args, **kwargs)
        return wrapper
