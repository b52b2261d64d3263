"""
Error taxonomy for exchange calls.

Every failure coming back from the CLOB is classified once, here, into an
ErrorKind. Callers decide retry and shutdown behavior from the kind alone.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure categories for exchange operations."""

    TRANSIENT = "transient"    # network, rate limit, balance/allowance race, no liquidity yet
    VALIDATION = "validation"  # below minimum size, bad price, rejected order
    FATAL = "fatal"            # credentials / authorization


class ExchangeError(Exception):
    """Raised by the exchange client adapter with a classified kind."""

    def __init__(self, kind: ErrorKind, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


FATAL_MARKERS = (
    "unauthorized",
    "invalid api key",
    "api key not found",
    "forbidden",
    "l2 auth",
    "invalid signature",
    "could not derive api key",
    "private key is needed",
    "api credentials are needed",
)

TRANSIENT_MARKERS = (
    "not enough balance",
    "allowance",
    "rate limit",
    "too many requests",
    "timeout",
    "timed out",
    "temporarily",
    "connection",
    "request exception",
    "service unavailable",
    # FOK kill / no crossing liquidity: worth retrying with a partial fill
    "fully filled or killed",
    "couldn't be fully filled",
    "no orders found to match",
    "no match",
)

GONE_MARKERS = (
    "not found",
    "already canceled",
    "already cancelled",
    "matched",
    "does not exist",
)


def classify_error(message: Optional[str], status_code: Optional[int] = None) -> ErrorKind:
    """
    Map an exchange error message / HTTP status onto an ErrorKind.

    Args:
        message: Error text from the API or the raised exception
        status_code: HTTP status when known

    Returns:
        ErrorKind for the failure
    """
    if status_code in (401, 403):
        return ErrorKind.FATAL
    if status_code == 429 or (status_code is not None and status_code >= 500):
        return ErrorKind.TRANSIENT

    text = (message or "").lower()
    if any(marker in text for marker in FATAL_MARKERS):
        return ErrorKind.FATAL
    if any(marker in text for marker in TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    return ErrorKind.VALIDATION


def is_already_gone(message: Optional[str]) -> bool:
    """True if a cancel failure means the order no longer rests on the book."""
    text = (message or "").lower()
    return any(marker in text for marker in GONE_MARKERS)
