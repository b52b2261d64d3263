"""Polymarket CLOB client module."""

from src.polymarket.client import ExchangeClient, PolymarketClient
from src.polymarket.errors import ErrorKind, ExchangeError, classify_error
from src.polymarket.schemas import (
    CancelResponse,
    OrderBook,
    OrderResponse,
    OrderSide,
    OrderStatus,
    OrderType,
    PriceLevel,
)

__all__ = [
    "ExchangeClient",
    "PolymarketClient",
    "ErrorKind",
    "ExchangeError",
    "classify_error",
    "OrderBook",
    "PriceLevel",
    "OrderResponse",
    "OrderStatus",
    "CancelResponse",
    "OrderSide",
    "OrderType",
]
