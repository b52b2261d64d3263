"""
Per-token trading rules (minimum order size, tick size) with a TTL cache.

Rules come from the order book endpoint. When the fetch fails the static
defaults are used and cached for the same TTL, so a flaky endpoint does not
get hammered on every order.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from src.polymarket.client import ExchangeClient

logger = logging.getLogger(__name__)

DEFAULT_MIN_ORDER_SIZE = 5.0
DEFAULT_TICK_SIZE = 0.01


@dataclass(frozen=True)
class MarketRules:
    token_id: str
    min_order_size: float
    tick_size: float
    fetched_at: float
    is_fallback: bool = False


class MarketRulesCache:
    """
    TTL cache of MarketRules keyed by token id.

    Concurrent misses for the same token may both fetch; the last write
    wins, which is harmless because both fetch the same rules.
    """

    def __init__(
        self,
        client: ExchangeClient,
        ttl_seconds: float = 300.0,
        default_min_order_size: float = DEFAULT_MIN_ORDER_SIZE,
        default_tick_size: float = DEFAULT_TICK_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.default_min_order_size = default_min_order_size
        self.default_tick_size = default_tick_size
        self._clock = clock
        self._rules: Dict[str, MarketRules] = {}
        self._lock = threading.Lock()

    def peek(self, token_id: str) -> Optional[MarketRules]:
        """Cached rules if present and fresh, without fetching."""
        with self._lock:
            rules = self._rules.get(token_id)
        if rules and self._clock() - rules.fetched_at < self.ttl_seconds:
            return rules
        return None

    async def get_rules(self, token_id: str) -> MarketRules:
        """
        Get rules for a token, fetching when missing or expired.

        Never raises for exchange failures; falls back to defaults.
        """
        cached = self.peek(token_id)
        if cached:
            return cached

        try:
            book = await self.client.get_order_book(token_id)
            rules = MarketRules(
                token_id=token_id,
                min_order_size=book.min_order_size or self.default_min_order_size,
                tick_size=book.tick_size or self.default_tick_size,
                fetched_at=self._clock(),
            )
            logger.debug(
                f"Rules for {token_id[:16]}...: min_size={rules.min_order_size} tick={rules.tick_size}"
            )
        except Exception as e:
            logger.warning(f"Rules fetch failed for {token_id[:16]}..., using defaults: {e}")
            rules = MarketRules(
                token_id=token_id,
                min_order_size=self.default_min_order_size,
                tick_size=self.default_tick_size,
                fetched_at=self._clock(),
                is_fallback=True,
            )

        with self._lock:
            self._rules[token_id] = rules
        return rules

    def invalidate(self, token_id: Optional[str] = None) -> None:
        """Drop one token's rules, or everything."""
        with self._lock:
            if token_id is None:
                self._rules.clear()
            else:
                self._rules.pop(token_id, None)
