"""
Market data types and entry/exit signal rules.

Markets come from an external discovery collaborator (the Gamma API in
production). Prices for the decision come from the price stream when fresh,
otherwise from the order book; this module only evaluates them.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field, field_validator

from live_trading.db.models import TradeSide
from live_trading.utils import format_time_remaining, parse_end_date, seconds_until

logger = logging.getLogger(__name__)

# Prices are compared after rounding away float noise (0.80 - 0.77 = 0.030000000000000027)
PRICE_EPSILON = 1e-9


def _json_list(v: Any) -> Any:
    """Gamma returns list fields as JSON-encoded strings."""
    if isinstance(v, str):
        try:
            return json.loads(v)
        except json.JSONDecodeError:
            return [part.strip() for part in v.split(",") if part.strip()]
    return v


class Market(BaseModel):
    """An up/down market with its two outcome tokens."""

    slug: str
    question: str = ""
    end_date: datetime = Field(alias="endDate")
    outcomes: List[str] = Field(default_factory=lambda: ["Up", "Down"])
    outcome_prices: List[float] = Field(default_factory=list, alias="outcomePrices")
    token_ids: List[str] = Field(alias="clobTokenIds")

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("end_date", mode="before")
    @classmethod
    def parse_end(cls, v):
        parsed = parse_end_date(v)
        if parsed is None:
            raise ValueError(f"invalid end date: {v!r}")
        return parsed

    @field_validator("outcomes", "token_ids", mode="before")
    @classmethod
    def parse_str_list(cls, v):
        return [str(item) for item in (_json_list(v) or [])]

    @field_validator("outcome_prices", mode="before")
    @classmethod
    def parse_prices(cls, v):
        return [float(item) for item in (_json_list(v) or [])]

    def token_for(self, side: TradeSide) -> Optional[str]:
        """Token id for UP ("Up"/"Yes") or DOWN ("Down"/"No")."""
        names = {"UP": ("up", "yes"), "DOWN": ("down", "no")}[TradeSide(side).value]
        for index, outcome in enumerate(self.outcomes):
            if outcome.strip().lower() in names and index < len(self.token_ids):
                return self.token_ids[index]
        # Fall back to positional order: [up, down]
        position = 0 if TradeSide(side) == TradeSide.UP else 1
        return self.token_ids[position] if position < len(self.token_ids) else None

    @property
    def up_token_id(self) -> Optional[str]:
        return self.token_for(TradeSide.UP)

    @property
    def down_token_id(self) -> Optional[str]:
        return self.token_for(TradeSide.DOWN)


class MarketDiscovery(Protocol):
    """Source of currently tradable up/down markets."""

    async def list_markets(self) -> List[Market]: ...


@dataclass(frozen=True)
class Quote:
    """Top of book for one token."""

    token_id: str
    bid: float
    ask: float

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2

    @property
    def spread(self) -> float:
        return self.ask - self.bid


@dataclass(frozen=True)
class EntrySignal:
    """An eligible side of a market."""

    market: Market
    side: TradeSide
    token_id: str
    bid: float
    ask: float
    time_remaining: float

    @property
    def spread(self) -> float:
        return round(self.ask - self.bid, 6)


@dataclass(frozen=True)
class MarketAnalysis:
    market: Market
    time_remaining: float
    signal: Optional[EntrySignal]
    reason: str

    @property
    def is_eligible(self) -> bool:
        return self.signal is not None


def is_spread_acceptable(bid: float, ask: float, max_spread: float) -> bool:
    """Spread (ask - bid) within max_spread, inclusive."""
    return round(ask - bid, 6) <= max_spread + PRICE_EPSILON


def is_entry_price_ok(ask: float, entry_threshold: float, max_entry_price: float) -> bool:
    """Ask within [entry_threshold, max_entry_price], inclusive."""
    ask = round(ask, 6)
    return entry_threshold - PRICE_EPSILON <= ask <= max_entry_price + PRICE_EPSILON


def should_stop_loss(current_bid: float, stop_loss: float) -> bool:
    """Stop-loss fires when the bid is at or below the stop (inclusive)."""
    return round(current_bid, 6) <= stop_loss + PRICE_EPSILON


def is_in_entry_window(time_remaining: float, time_window_seconds: float) -> bool:
    return 0 < time_remaining <= time_window_seconds


def analyze_market(
    market: Market,
    quotes: Dict[str, Quote],
    entry_threshold: float,
    max_entry_price: float,
    max_spread: float,
    time_window_seconds: float,
    now: Optional[datetime] = None,
) -> MarketAnalysis:
    """
    Decide whether either side of a market is worth entering.

    A side is eligible when its ask is within [entry_threshold,
    max_entry_price], its spread is at most max_spread, and the market
    ends within time_window_seconds.

    Args:
        market: Market to evaluate
        quotes: Current quotes keyed by token id (missing = skip that side)
        entry_threshold: Minimum ask to enter
        max_entry_price: Maximum ask to enter
        max_spread: Maximum ask - bid
        time_window_seconds: Only enter this close to the end
        now: Current time (default: now)

    Returns:
        MarketAnalysis with the eligible side, if any
    """
    remaining = seconds_until(market.end_date, now)
    if not is_in_entry_window(remaining, time_window_seconds):
        return MarketAnalysis(market, remaining, None, f"outside window ({format_time_remaining(remaining)} left)")

    reasons = []
    candidates: List[EntrySignal] = []
    for side in (TradeSide.UP, TradeSide.DOWN):
        token_id = market.token_for(side)
        quote = quotes.get(token_id) if token_id else None
        if quote is None:
            reasons.append(f"{side.value}: no quote")
            continue
        if not is_entry_price_ok(quote.ask, entry_threshold, max_entry_price):
            reasons.append(f"{side.value}: ask {quote.ask:.3f} outside {entry_threshold:.2f}-{max_entry_price:.2f}")
            continue
        if not is_spread_acceptable(quote.bid, quote.ask, max_spread):
            reasons.append(f"{side.value}: spread {quote.spread:.3f} > {max_spread:.2f}")
            continue
        candidates.append(EntrySignal(market, side, token_id, quote.bid, quote.ask, remaining))

    if not candidates:
        return MarketAnalysis(market, remaining, None, "; ".join(reasons))

    best = max(candidates, key=lambda s: s.ask)
    return MarketAnalysis(market, remaining, best, f"{best.side.value} @ {best.ask:.3f}")
