"""
Order executor: sizing, price clamping, urgent and resting sells.

Buys are single-shot GTC limit orders. Stop-loss sells re-read the
exchange balance before every attempt, start with a fill-or-kill and fall
back to fill-and-kill on retries. Every exchange failure comes back as an
OrderResult carrying an ErrorKind; nothing here raises for exchange errors.
"""

import asyncio
import itertools
import logging
import time
from decimal import ROUND_DOWN, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Callable, Optional, Tuple

from live_trading.config import TradingConfig
from live_trading.market_data import Quote
from live_trading.market_rules import MarketRules, MarketRulesCache
from live_trading.results import OrderResult, is_transient_failure
from src.polymarket.client import ExchangeClient
from src.polymarket.errors import ErrorKind, ExchangeError, is_already_gone
from src.polymarket.schemas import OrderSide, OrderStatus, OrderType
from src.utils.retry import call_with_retry, create_result_retry

logger = logging.getLogger(__name__)

SHARE_STEP = Decimal("0.01")


def compute_shares(notional_usd: float, price: float) -> float:
    """
    Shares purchasable for a dollar amount, floored to 0.01.

    10 @ 0.20 -> 50.00, 1 @ 0.33 -> 3.03
    """
    if price <= 0:
        return 0.0
    shares = Decimal(str(notional_usd)) / Decimal(str(price))
    return float(shares.quantize(SHARE_STEP, rounding=ROUND_DOWN))


def floor_shares(shares: float) -> float:
    """Floor a share count to the 0.01 share step."""
    return float(Decimal(str(shares)).quantize(SHARE_STEP, rounding=ROUND_DOWN))


def clamp_price(price: float, tick_size: float) -> float:
    """
    Round a price to the nearest tick, kept within [tick, 1 - tick].

    0.123 @ 0.01 -> 0.12, 0.999 @ 0.01 -> 0.99, 0.0 @ 0.01 -> 0.01
    """
    tick = Decimal(str(tick_size))
    ticks = (Decimal(str(price)) / tick).to_integral_value(rounding=ROUND_HALF_UP)
    max_ticks = ((Decimal(1) - tick) / tick).to_integral_value(rounding=ROUND_FLOOR)
    ticks = min(max(ticks, Decimal(1)), max_ticks)
    return float(ticks * tick)


class OrderExecutor:
    """
    Places and cancels orders against the exchange.

    Rate limiting happens inside the exchange client, so every call made
    from here (orders, balances, books, status, cancels, rules) waits for
    a token first.
    """

    def __init__(
        self,
        client: ExchangeClient,
        rules_cache: MarketRulesCache,
        sell_max_attempts: int = 3,
        retry_min_wait: float = 0.5,
        retry_max_wait: float = 4.0,
        fill_timeout: float = 5.0,
        fill_poll_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize order executor.

        Args:
            client: Exchange client adapter
            rules_cache: Min size / tick size lookup
            sell_max_attempts: Attempt cap for sells (first try included)
            retry_min_wait: First backoff delay between sell attempts
            retry_max_wait: Cap on the exponential backoff
            fill_timeout: Max seconds to wait for an urgent sell to fill
            fill_poll_interval: Seconds between order status polls
            clock: Monotonic clock, injectable for tests
        """
        self.client = client
        self.rules_cache = rules_cache
        self.fill_timeout = fill_timeout
        self.fill_poll_interval = fill_poll_interval
        self._clock = clock
        self._sell_retry = create_result_retry(
            is_transient_failure,
            max_attempts=sell_max_attempts,
            min_wait=retry_min_wait,
            max_wait=retry_max_wait,
        )

    @classmethod
    def from_config(
        cls,
        client: ExchangeClient,
        rules_cache: MarketRulesCache,
        config: TradingConfig,
    ) -> "OrderExecutor":
        return cls(
            client,
            rules_cache,
            sell_max_attempts=config.sell_max_attempts,
            retry_min_wait=config.retry_min_wait_seconds,
            retry_max_wait=config.retry_max_wait_seconds,
            fill_timeout=config.fill_timeout_seconds,
            fill_poll_interval=config.fill_poll_interval_seconds,
        )

    # --- queries -------------------------------------------------------------

    async def get_balance(self) -> Optional[float]:
        """Collateral balance in USD, None if the exchange call failed."""
        try:
            return await self.client.get_collateral_balance()
        except ExchangeError as e:
            logger.warning(f"Balance query failed: {e}")
            return None

    async def get_token_balance(self, token_id: str) -> Optional[float]:
        try:
            return await self.client.get_token_balance(token_id)
        except ExchangeError as e:
            logger.warning(f"Token balance query failed for {token_id[:16]}...: {e}")
            return None

    async def get_quote(self, token_id: str) -> Optional[Quote]:
        """Best bid/ask from the order book, None if unavailable."""
        try:
            book = await self.client.get_order_book(token_id)
        except ExchangeError as e:
            logger.warning(f"Order book query failed for {token_id[:16]}...: {e}")
            return None
        if book.best_bid <= 0 and book.best_ask >= 1:
            return None
        return Quote(token_id=token_id, bid=book.best_bid, ask=book.best_ask)

    # --- buy -----------------------------------------------------------------

    async def buy(self, token_id: str, price: float, notional_usd: float) -> OrderResult:
        """
        Buy as many shares as notional_usd affords at price (GTC limit).

        Not retried: a rejected entry is simply skipped this cycle.
        """
        if not (0 < price < 1):
            return OrderResult.failed(f"Invalid price {price}: must be between 0 and 1", ErrorKind.VALIDATION)
        if notional_usd <= 0:
            return OrderResult.failed(f"Invalid amount ${notional_usd}", ErrorKind.VALIDATION)

        rules = await self.rules_cache.get_rules(token_id)
        limit_price = clamp_price(price, rules.tick_size)
        shares = compute_shares(notional_usd, limit_price)

        if shares <= 0:
            return OrderResult.failed(
                f"Insufficient funds: ${notional_usd:.2f} buys no shares at {limit_price}",
                ErrorKind.VALIDATION,
            )
        if shares < rules.min_order_size:
            needed = rules.min_order_size * limit_price
            return OrderResult.failed(
                f"Order size {shares} below minimum {rules.min_order_size} shares "
                f"(need ${needed:.2f}, have ${notional_usd:.2f})",
                ErrorKind.VALIDATION,
                requested_shares=shares,
            )

        response = await self.client.place_order(token_id, limit_price, shares, OrderSide.BUY, OrderType.GTC)
        if not response.success:
            logger.warning(f"Buy rejected for {token_id[:16]}...: {response.error_msg}")
            return OrderResult.failed(
                f"Buy rejected: {response.error_msg}",
                response.error_kind or ErrorKind.VALIDATION,
                requested_shares=shares,
            )

        logger.info(f"BUY {shares} @ {limit_price} on {token_id[:16]}... (order {response.order_id})")
        return OrderResult(
            success=True,
            order_id=response.order_id,
            shares=shares,
            price=limit_price,
            requested_shares=shares,
        )

    # --- sells ---------------------------------------------------------------

    async def sell(self, token_id: str, shares: float) -> OrderResult:
        """
        Urgent sell at the best bid (stop-loss path).

        Attempt 1 is fill-or-kill; later attempts accept partial fills.
        Transient failures are retried with capped exponential backoff.
        """
        attempt_numbers = itertools.count(1)

        async def attempt() -> OrderResult:
            number = next(attempt_numbers)
            order_type = OrderType.FOK if number == 1 else OrderType.FAK
            return await self._sell_once(token_id, shares, order_type, number)

        result = await call_with_retry(self._sell_retry, attempt)
        if result.success:
            logger.info(
                f"SELL {result.shares} @ {result.price} on {token_id[:16]}... "
                f"({'full' if result.full_fill else 'partial'} fill)"
            )
        else:
            logger.error(f"Sell failed for {token_id[:16]}... ({result.error_kind}): {result.error}")
        return result

    async def limit_sell(self, token_id: str, shares: float, price: float) -> OrderResult:
        """Resting GTC sell at a target price (profit-taking path)."""
        if not (0 < price < 1):
            return OrderResult.failed(f"Invalid price {price}: must be between 0 and 1", ErrorKind.VALIDATION)

        async def attempt() -> OrderResult:
            rules = await self.rules_cache.get_rules(token_id)
            quantity, failure = await self._sellable_quantity(token_id, shares, rules)
            if failure:
                return failure

            limit_price = clamp_price(price, rules.tick_size)
            response = await self.client.place_order(
                token_id, limit_price, quantity, OrderSide.SELL, OrderType.GTC
            )
            if not response.success:
                return OrderResult.failed(
                    f"Limit sell rejected: {response.error_msg}",
                    response.error_kind or ErrorKind.VALIDATION,
                    requested_shares=shares,
                )
            return OrderResult(
                success=True,
                order_id=response.order_id,
                shares=quantity,
                price=limit_price,
                requested_shares=shares,
            )

        result = await call_with_retry(self._sell_retry, attempt)
        if result.success:
            logger.info(f"Resting SELL {result.shares} @ {result.price} on {token_id[:16]}... (order {result.order_id})")
        else:
            logger.warning(f"Limit sell failed for {token_id[:16]}...: {result.error}")
        return result

    async def _sell_once(
        self,
        token_id: str,
        shares: float,
        order_type: OrderType,
        attempt: int,
    ) -> OrderResult:
        rules = await self.rules_cache.get_rules(token_id)
        quantity, failure = await self._sellable_quantity(token_id, shares, rules)
        if failure:
            return failure

        try:
            book = await self.client.get_order_book(token_id)
        except ExchangeError as e:
            return OrderResult.failed(f"Order book unavailable: {e.message}", e.kind, shares)

        if book.best_bid <= 0:
            return OrderResult.failed("No bids on the book", ErrorKind.TRANSIENT, shares)

        price = clamp_price(book.best_bid, rules.tick_size)
        logger.info(f"Sell attempt {attempt}: {order_type.value} {quantity} @ {price} on {token_id[:16]}...")

        response = await self.client.place_order(token_id, price, quantity, OrderSide.SELL, order_type)
        if not response.success:
            return OrderResult.failed(
                f"Sell rejected: {response.error_msg}",
                response.error_kind or ErrorKind.VALIDATION,
                shares,
            )

        status = await self._await_fill(response.order_id)
        filled = floor_shares(status.size_matched) if status else 0.0
        if filled <= 0:
            await self.cancel_order(response.order_id)
            return OrderResult.failed(
                f"Sell order {response.order_id} not filled within {self.fill_timeout}s",
                ErrorKind.TRANSIENT,
                shares,
            )

        return OrderResult(
            success=True,
            order_id=response.order_id,
            shares=filled,
            price=(status.price if status and status.price else price),
            full_fill=filled >= quantity - 1e-9,
            requested_shares=shares,
        )

    async def _sellable_quantity(
        self,
        token_id: str,
        requested: float,
        rules: MarketRules,
    ) -> Tuple[float, Optional[OrderResult]]:
        """
        Clamp a sell to the balance the exchange actually holds.

        Returns:
            (quantity, None) when sellable, (0, failure) otherwise
        """
        try:
            held = await self.client.get_token_balance(token_id)
        except ExchangeError as e:
            return 0.0, OrderResult.failed(f"Balance check failed: {e.message}", e.kind, requested)

        quantity = floor_shares(min(requested, held))
        if held < requested:
            logger.warning(
                f"Exchange holds {held} shares of {token_id[:16]}..., "
                f"clamping sell from {requested} to {quantity}"
            )

        if quantity < rules.min_order_size:
            return 0.0, OrderResult.failed(
                f"Sell size {quantity} below minimum {rules.min_order_size} shares (exchange holds {held})",
                ErrorKind.VALIDATION,
                requested,
            )
        return quantity, None

    async def _await_fill(self, order_id: Optional[str]) -> Optional[OrderStatus]:
        """Poll an order until it is filled, terminal, or fill_timeout passes."""
        if not order_id:
            return None

        deadline = self._clock() + self.fill_timeout
        last: Optional[OrderStatus] = None
        while True:
            try:
                last = await self.client.get_order(order_id)
            except ExchangeError as e:
                logger.debug(f"Order status poll failed for {order_id}: {e}")

            if last and (last.is_fully_filled or last.is_terminal):
                return last
            if self._clock() >= deadline:
                return last
            await asyncio.sleep(self.fill_poll_interval)

    # --- cancels -------------------------------------------------------------

    async def cancel_order(self, order_id: str) -> bool:
        """Cancel one order. An order that is already gone counts as cancelled."""
        try:
            response = await self.client.cancel_order(order_id)
        except ExchangeError as e:
            if is_already_gone(e.message):
                return True
            logger.warning(f"Cancel failed for order {order_id}: {e}")
            return False
        return self._cancel_succeeded(response.not_canceled, f"order {order_id}")

    async def cancel_token_orders(self, token_id: str) -> bool:
        """Cancel every resting order on one token."""
        try:
            response = await self.client.cancel_token_orders(token_id)
        except ExchangeError as e:
            if is_already_gone(e.message):
                return True
            logger.warning(f"Cancel failed for token {token_id[:16]}...: {e}")
            return False
        return self._cancel_succeeded(response.not_canceled, f"token {token_id[:16]}...")

    async def cancel_all(self) -> bool:
        try:
            response = await self.client.cancel_all()
        except ExchangeError as e:
            logger.warning(f"Cancel all failed: {e}")
            return False
        return self._cancel_succeeded(response.not_canceled, "all orders")

    @staticmethod
    def _cancel_succeeded(not_canceled: dict, label: str) -> bool:
        refused = {oid: reason for oid, reason in not_canceled.items() if not is_already_gone(reason)}
        if refused:
            logger.warning(f"Cancel of {label} refused for {len(refused)} order(s): {refused}")
            return False
        return True
