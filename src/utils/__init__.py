"""Utility modules for the Polymarket trading engine."""

from src.utils.rate_limiter import (
    AdaptiveRateLimiter,
    get_clob_rate_limiter,
)
from src.utils.retry import (
    call_with_retry,
    create_result_retry,
)

__all__ = [
    "AdaptiveRateLimiter",
    "get_clob_rate_limiter",
    "call_with_retry",
    "create_result_retry",
]
