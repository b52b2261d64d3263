"""
Retry policies with exponential backoff using tenacity.

Exchange calls in this project report failures as typed results rather than
exceptions, so the policies here retry on the *result* of an attempt.
"""

import logging
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def create_result_retry(
    should_retry: Callable[[Any], bool],
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 4.0,
) -> AsyncRetrying:
    """
    Create an async retry policy driven by attempt results.

    Args:
        should_retry: Predicate on an attempt's return value
        max_attempts: Maximum number of attempts (first try included)
        min_wait: Minimum wait time between attempts (seconds)
        max_wait: Cap on the exponential wait (seconds)

    Returns:
        AsyncRetrying instance
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_result(should_retry),
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )


async def call_with_retry(
    policy: AsyncRetrying,
    fn: Callable[..., Awaitable[T]],
    *args,
    **kwargs,
) -> T:
    """
    Run fn under policy and return its last result.

    When attempts are exhausted the final (still failing) result is returned
    instead of raising RetryError. Exceptions raised by fn propagate.
    Each call runs on a copy of the policy so concurrent callers do not
    share retry state.
    """
    try:
        return await policy.copy()(fn, *args, **kwargs)
    except RetryError as e:
        return e.last_attempt.result()
