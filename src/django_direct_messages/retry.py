"""Retry policy for transient storage failures."""

import logging
import time

from django.db import InterfaceError, OperationalError, connection

from . import conf
from .exceptions import StorageUnavailable

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, InterfaceError)


def backoff_delays(attempts: int, base: float):
    """Yield the sleep before each retry: base, 2*base, 4*base, ..."""
    for attempt in range(1, attempts):
        yield base * (2 ** (attempt - 1))


def with_storage_retry(operation: str, func, *args, **kwargs):
    """Call func, retrying transient database errors with exponential backoff.

    Retrying is only meaningful when func owns its transaction. Inside an
    enclosing atomic block the transaction is already broken after the
    first failure, so the error is converted without retrying.

    Raises:
        StorageUnavailable: When every attempt failed with a transient error
    """
    attempts = 1 if connection.in_atomic_block else conf.storage_retries()
    delays = backoff_delays(attempts, conf.storage_backoff())
    last_error = None

    for attempt in range(1, attempts + 1):
        try:
            return func(*args, **kwargs)
        except TRANSIENT_ERRORS as e:
            last_error = e
            if attempt == attempts:
                break
            delay = next(delays)
            logger.warning(
                "Storage error during %s (attempt %d/%d), retrying in %.2fs: %s",
                operation, attempt, attempts, delay, e,
            )
            time.sleep(delay)

    logger.error("Storage unavailable during %s after %d attempt(s): %s", operation, attempts, last_error)
    raise StorageUnavailable(operation, attempts=attempts, original_error=last_error)

