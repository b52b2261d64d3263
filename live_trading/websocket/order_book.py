"""
Price snapshot state from the Polymarket market channel.

Handles:
- Full book snapshots ("book" events, or any message carrying bids/asks)
- Best bid/ask changes ("price_change" events and "price_changes" batches)
- Last trade prices ("last_trade_price"), used only when no book data exists

Explicit best bid/ask data always overwrites. A trade print never replaces
a snapshot that already carries a real spread (bid != ask).
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


def parse_price(value: Any) -> Optional[float]:
    """Parse a price field; None unless it is a finite number within [0, 1]."""
    if value is None or isinstance(value, bool):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(price) or price < 0 or price > 1:
        return None
    return price


def _level_prices(levels: Any) -> List[float]:
    prices = []
    for level in levels or []:
        if isinstance(level, dict):
            price = parse_price(level.get("price"))
            if price is not None:
                prices.append(price)
    return prices


@dataclass(frozen=True)
class PriceSnapshot:
    """Latest known prices for one outcome token."""

    token_id: str
    price: float
    best_bid: float
    best_ask: float
    updated_at: float  # monotonic seconds

    @property
    def has_real_spread(self) -> bool:
        """False for trade-derived snapshots where bid == ask == price."""
        return self.best_bid != self.best_ask

    @property
    def spread(self) -> float:
        return self.best_ask - self.best_bid

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since the last update."""
        return (now if now is not None else time.monotonic()) - self.updated_at


class PriceBook:
    """
    Snapshot map keyed by token id, updated from market channel messages.

    Single writer: only the price stream's reader task calls apply().
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.snapshots: Dict[str, PriceSnapshot] = {}
        self._clock = clock

    def get(self, token_id: str) -> Optional[PriceSnapshot]:
        return self.snapshots.get(token_id)

    def apply(self, data: Any) -> List[PriceSnapshot]:
        """
        Apply one decoded message (dict or list of dicts).

        Returns:
            Snapshots that changed, in message order
        """
        updated: List[PriceSnapshot] = []

        if isinstance(data, list):
            for item in data:
                updated.extend(self.apply(item))
            return updated

        if not isinstance(data, dict):
            return updated

        event_type = data.get("event_type")

        if event_type == "book" or "bids" in data or "asks" in data:
            snapshot = self._apply_book(data)
        elif isinstance(data.get("price_changes"), list):
            for change in data["price_changes"]:
                if isinstance(change, dict):
                    snapshot = self._apply_price_change(change, data)
                    if snapshot:
                        updated.append(snapshot)
            return updated
        elif event_type == "price_change" or ("best_bid" in data and "best_ask" in data):
            snapshot = self._apply_best_quotes(data.get("asset_id"), data)
        elif event_type == "last_trade_price" or "price" in data:
            snapshot = self._apply_trade(data.get("asset_id"), parse_price(data.get("price")))
        else:
            logger.debug(f"Ignoring market message (event_type={event_type})")
            snapshot = None

        if snapshot:
            updated.append(snapshot)
        return updated

    def _store(self, token_id: str, price: float, bid: float, ask: float) -> PriceSnapshot:
        snapshot = PriceSnapshot(
            token_id=token_id,
            price=price,
            best_bid=bid,
            best_ask=ask,
            updated_at=self._clock(),
        )
        self.snapshots[token_id] = snapshot
        return snapshot

    def _apply_book(self, data: dict) -> Optional[PriceSnapshot]:
        token_id = data.get("asset_id")
        if not token_id:
            return None

        bids = _level_prices(data.get("bids"))
        asks = _level_prices(data.get("asks"))

        # Levels are not guaranteed to be sorted
        best_bid = max(bids) if bids else 0.0
        best_ask = min(asks) if asks else 1.0

        if best_bid > 0 and best_ask < 1:
            price = (best_bid + best_ask) / 2
        elif best_bid > 0:
            price = best_bid
        elif best_ask < 1:
            price = best_ask
        else:
            # Empty book carries no information
            return None

        logger.debug(f"Book {token_id[:16]}... bid={best_bid:.3f} ask={best_ask:.3f}")
        return self._store(token_id, price, best_bid, best_ask)

    def _apply_best_quotes(self, token_id: Optional[str], data: dict) -> Optional[PriceSnapshot]:
        if not token_id:
            return None
        bid = parse_price(data.get("best_bid"))
        ask = parse_price(data.get("best_ask"))
        if bid is None or ask is None:
            return None
        if bid <= 0 and ask >= 1:
            return None
        return self._store(token_id, (bid + ask) / 2, bid, ask)

    def _apply_price_change(self, change: dict, parent: dict) -> Optional[PriceSnapshot]:
        token_id = change.get("asset_id") or parent.get("asset_id")
        if not token_id:
            return None

        bid = parse_price(change.get("best_bid"))
        ask = parse_price(change.get("best_ask"))
        if bid is not None and ask is not None and (bid > 0 or ask < 1):
            return self._store(token_id, (bid + ask) / 2, bid, ask)

        return self._apply_trade(token_id, parse_price(change.get("price")))

    def _apply_trade(self, token_id: Optional[str], price: Optional[float]) -> Optional[PriceSnapshot]:
        if not token_id or price is None:
            return None

        existing = self.snapshots.get(token_id)
        if existing and existing.has_real_spread:
            # Book data wins over trade prints
            return None

        return self._store(token_id, price, price, price)
