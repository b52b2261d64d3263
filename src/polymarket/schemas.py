"""
Pydantic schemas for Polymarket CLOB responses.

py-clob-client hands back a mix of dataclasses (order book summaries) and
plain dicts (orders, balances, cancels) with numeric values as strings.
These models normalize them into floats and explicit fields.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from src.polymarket.errors import ErrorKind, classify_error


def _to_float(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a dict or an attribute-style object."""
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    """Time in force for submitted orders."""

    GTC = "GTC"  # rests on the book
    FOK = "FOK"  # fill entirely now or cancel
    FAK = "FAK"  # fill what is available now, cancel the rest


class PriceLevel(BaseModel):
    price: float
    size: float

    @field_validator("price", "size", mode="before")
    @classmethod
    def parse_number(cls, v):
        return _to_float(v) or 0.0


class OrderBook(BaseModel):
    """Order book for one outcome token, plus its trading rules."""

    token_id: str
    bids: List[PriceLevel] = Field(default_factory=list)
    asks: List[PriceLevel] = Field(default_factory=list)
    min_order_size: Optional[float] = None
    tick_size: Optional[float] = None

    model_config = {"extra": "allow"}

    @field_validator("min_order_size", "tick_size", mode="before")
    @classmethod
    def parse_optional_number(cls, v):
        return _to_float(v)

    @property
    def best_bid(self) -> float:
        """Highest bid, 0.0 when the bid side is empty.

        Levels are not assumed to be sorted.
        """
        prices = [level.price for level in self.bids if level.size > 0]
        return max(prices) if prices else 0.0

    @property
    def best_ask(self) -> float:
        """Lowest ask, 1.0 when the ask side is empty."""
        prices = [level.price for level in self.asks if level.size > 0]
        return min(prices) if prices else 1.0

    @property
    def mid(self) -> float:
        return (self.best_bid + self.best_ask) / 2

    @classmethod
    def from_summary(cls, token_id: str, summary: Any) -> "OrderBook":
        """Build from a py-clob-client OrderBookSummary or its dict form."""

        def levels(raw) -> List[Dict[str, Any]]:
            return [{"price": _get(lvl, "price"), "size": _get(lvl, "size")} for lvl in (raw or [])]

        return cls(
            token_id=token_id,
            bids=levels(_get(summary, "bids")),
            asks=levels(_get(summary, "asks")),
            min_order_size=_get(summary, "min_order_size"),
            tick_size=_get(summary, "tick_size"),
        )


class OrderResponse(BaseModel):
    """Outcome of submitting an order."""

    success: bool
    order_id: Optional[str] = None
    status: Optional[str] = None
    error_msg: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "OrderResponse":
        data = data or {}
        order_id = data.get("orderID") or data.get("orderId") or None
        error_msg = data.get("errorMsg") or None
        success = bool(data.get("success")) and bool(order_id) and not error_msg
        if success:
            return cls(success=True, order_id=order_id, status=data.get("status"))
        error_msg = error_msg or "Order rejected without an error message"
        return cls(
            success=False,
            order_id=order_id,
            status=data.get("status"),
            error_msg=error_msg,
            error_kind=classify_error(error_msg),
        )

    @classmethod
    def failure(cls, message: str, kind: ErrorKind) -> "OrderResponse":
        return cls(success=False, error_msg=message, error_kind=kind)


class OrderStatus(BaseModel):
    """Order state as reported by get_order."""

    order_id: str = Field(alias="id")
    status: str = ""
    original_size: float = 0.0
    size_matched: float = 0.0
    price: Optional[float] = None

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("original_size", "size_matched", mode="before")
    @classmethod
    def parse_size(cls, v):
        return _to_float(v) or 0.0

    @field_validator("price", mode="before")
    @classmethod
    def parse_price(cls, v):
        return _to_float(v)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return str(v or "").upper()

    @property
    def is_terminal(self) -> bool:
        return self.status in ("MATCHED", "CANCELED", "CANCELLED", "CANCELED_MARKET_RESOLVED")

    @property
    def is_fully_filled(self) -> bool:
        return self.original_size > 0 and self.size_matched >= self.original_size - 1e-9


class CancelResponse(BaseModel):
    """Result of a cancel call: ids cancelled and ids refused with reasons."""

    canceled: List[str] = Field(default_factory=list)
    not_canceled: Dict[str, str] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @field_validator("canceled", mode="before")
    @classmethod
    def parse_canceled(cls, v):
        return list(v or [])

    @field_validator("not_canceled", mode="before")
    @classmethod
    def parse_not_canceled(cls, v):
        return {str(k): str(reason) for k, reason in (v or {}).items()}
