"""
Bounded retry for transactional units of work.

Settlement, dispute resolution and webhook application each touch the
Payment plus the Delivery/Company/Driver aggregates. Those writes run in
one transaction; when the database reports a transient conflict (deadlock,
serialization failure, lock timeout) or a conditional write finds the
payment already changed, the whole unit is rolled back and re-run from a
fresh read with exponential backoff.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from django.conf import settings
from django.db import OperationalError, transaction

from escrow.adapters import backoff_delay
from escrow.exceptions import StaleRecordError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (OperationalError, StaleRecordError)


def run_atomic_with_retry(
    func: Callable[..., T],
    *args,
    max_attempts: int | None = None,
    base_delay: float | None = None,
    **kwargs,
) -> T:
    """
    Run func inside transaction.atomic(), retrying transient conflicts.

    Args:
        func: Unit of work; it must re-read everything it needs
        max_attempts: Total attempts (default ESCROW_SETTLEMENT_MAX_ATTEMPTS)
        base_delay: First backoff delay in seconds
            (default ESCROW_SETTLEMENT_RETRY_BASE_DELAY)

    Returns:
        Whatever func returns

    Raises:
        The last transient error once attempts are exhausted; any other
        error immediately.
    """
    if max_attempts is None:
        max_attempts = settings.ESCROW_SETTLEMENT_MAX_ATTEMPTS
    if base_delay is None:
        base_delay = settings.ESCROW_SETTLEMENT_RETRY_BASE_DELAY

    for attempt in range(max_attempts):
        try:
            with transaction.atomic():
                return func(*args, **kwargs)
        except TRANSIENT_ERRORS as e:
            if attempt + 1 >= max_attempts:
                logger.error(
                    "Transactional unit failed after retries",
                    extra={
                        "unit": getattr(func, "__qualname__", repr(func)),
                        "attempts": max_attempts,
                        "error": str(e),
                    },
                )
                raise
            delay = backoff_delay(attempt, base=base_delay, max_delay=2.0)
            logger.warning(
                f"Transient conflict, retrying: {type(e).__name__}",
                extra={
                    "unit": getattr(func, "__qualname__", repr(func)),
                    "attempt": attempt + 1,
                    "delay_seconds": round(delay, 3),
                },
            )
            time.sleep(delay)

    raise RuntimeError("max_attempts must be at least 1")
