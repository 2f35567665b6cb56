from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from ..errors import TransientStoreError

"""Bounded retry for transient store errors (lock / deadlock / connection).

Only errors the dialect classifies as transient are retried; anything else is
raised immediately. Total attempts = 1 + max_retries, with exponential backoff.
``on_retry`` runs before each repeated attempt (e.g. ``ConnectionSlot.recover``
to replace a dropped connection); a transient failure inside it counts as a
failed attempt.
"""

__all__ = [
    "retry_transient",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_transient(
    fn: Callable[[], T],
    *,
    is_transient: Callable[[BaseException], bool],
    max_retries: int = 3,
    backoff_seconds: float = 0.5,
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[BaseException], None] | None = None,
) -> tuple[T, int]:
    """Run ``fn`` and return ``(result, attempts)``.

    Raises:
        TransientStoreError: every attempt failed with a transient error
    """
    total_attempts = 1 + max_retries
    last_exc: Exception | None = None
    for attempt in range(1, total_attempts + 1):
        try:
            if last_exc is not None and on_retry is not None:
                on_retry(last_exc)
            result = fn()
            if attempt > 1:
                logger.info(f"{label}: succeeded on attempt {attempt}/{total_attempts}")
            return result, attempt
        except Exception as exc:
            if not is_transient(exc):
                raise
            last_exc = exc
            logger.warning(f"{label}: attempt {attempt}/{total_attempts} failed (transient): {exc}")
            if attempt < total_attempts:
                sleep(backoff_seconds * (2 ** (attempt - 1)))
    raise TransientStoreError(f"{label}: failed after {total_attempts} attempt(s): {last_exc}") from last_exc
