"""
Exponential-backoff retry wrapper for remote calls (database reads, object storage).
"""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from bloomfund.errors import BloomFundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3


def retrying(
    attempts: int = DEFAULT_ATTEMPTS,
    *,
    min_wait: float = 0.5,
    max_wait: float = 4.0,
):
    """
    Decorator: retry up to `attempts` times, doubling the wait each time.

    Domain errors are raised immediately; only unexpected failures are retried.
    The last exception is re-raised once attempts are exhausted.
    """
    return retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_not_exception_type(BloomFundError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def with_retry(
    fn: Callable[..., T],
    *args,
    attempts: int = DEFAULT_ATTEMPTS,
    min_wait: float = 0.5,
    **kwargs,
) -> T:
    """Call `fn(*args, **kwargs)` under the retry policy."""
    return retrying(attempts, min_wait=min_wait)(fn)(*args, **kwargs)
