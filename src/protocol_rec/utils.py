"""Utility functions and decorators for protocol_rec."""

import time
import logging
from datetime import datetime
from functools import wraps
from typing import TypeVar, Callable, Iterator

logger = logging.getLogger(__name__)

T = TypeVar('T')


def backoff_delays(max_retries: int, initial_delay: float, backoff_factor: float) -> Iterator[float]:
    """Yield the sleep before each retry (one fewer than max_retries)."""
    delay = initial_delay
    for _ in range(max(0, max_retries - 1)):
        yield delay
        delay *= backoff_factor


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Decorator that retries a function with exponential backoff on failure.

    Args:
        max_retries: Total number of attempts, at least one
        initial_delay: Seconds to wait before the second attempt
        backoff_factor: Multiplier applied to the wait after each failure
        exceptions: Exception types that trigger a retry; others propagate at once

    Example:
        @retry_with_backoff(max_retries=3, exceptions=(sqlite3.OperationalError,))
        def write_feedback(rows):
            ...
    """
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            attempt = 1
            for delay in backoff_delays(max_retries, initial_delay, backoff_factor):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt}/{max_retries}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    attempt += 1

            try:
                return func(*args, **kwargs)
            except exceptions as e:
                logger.error(f"{func.__name__} failed after {max_retries} attempts: {e}")
                raise

        return wrapper
    return decorator


def parse_timestamp_naive(value: str | datetime | None) -> datetime | None:
    """
    Parse an ISO timestamp (or take a datetime) as a naive datetime.

    Stored and exported timestamps may or may not carry an offset; dropping
    it keeps comparisons with the naive engine clock consistent.
    """
    if not value:
        return None
    dt = datetime.fromisoformat(value) if isinstance(value, str) else value
    return dt.replace(tzinfo=None) if dt.tzinfo else dt
