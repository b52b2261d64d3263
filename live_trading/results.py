"""Typed outcomes of order operations."""

from dataclasses import dataclass
from typing import Optional

from src.polymarket.errors import ErrorKind


@dataclass(frozen=True)
class OrderResult:
    """
    Result of a buy, sell or limit sell.

    On success, shares/price describe what was submitted (buy, limit sell)
    or what actually filled (urgent sell). full_fill is only meaningful
    for urgent sells.
    """

    success: bool
    order_id: Optional[str] = None
    shares: float = 0.0
    price: Optional[float] = None
    full_fill: bool = False
    requested_shares: float = 0.0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def is_transient(self) -> bool:
        return not self.success and self.error_kind == ErrorKind.TRANSIENT

    @property
    def is_fatal(self) -> bool:
        return not self.success and self.error_kind == ErrorKind.FATAL

    @classmethod
    def failed(cls, error: str, kind: ErrorKind, requested_shares: float = 0.0) -> "OrderResult":
        return cls(success=False, error=error, error_kind=kind, requested_shares=requested_shares)


def is_transient_failure(result: OrderResult) -> bool:
    """Retry predicate for order attempts."""
    return result.is_transient
