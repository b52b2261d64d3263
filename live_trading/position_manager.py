"""
Position manager: the trading loop.

Each tick:
1. Refresh the collateral balance
2. Check stop-losses on open positions with the freshest price
3. Rest profit-target sells (optional) and reconcile with the exchange
4. Scan for entries when the balance allows

Stop-losses also react to price stream updates between ticks. Entry and
exit on the same token never overlap (ActivityRegistry).
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

from live_trading.activity import ActivityRegistry, InstrumentActivity
from live_trading.config import TradingConfig
from live_trading.db.ledger import TradeLedger
from live_trading.db.models import TradeStatus
from live_trading.market_data import (
    EntrySignal,
    Market,
    MarketDiscovery,
    Quote,
    analyze_market,
    is_in_entry_window,
    should_stop_loss,
)
from live_trading.order_executor import OrderExecutor, floor_shares
from live_trading.position_tracker import Position, PositionTracker
from live_trading.results import OrderResult
from live_trading.utils import format_time_remaining, seconds_until, utc_now
from live_trading.websocket.handler import PriceChannel, PriceStream
from live_trading.websocket.order_book import PriceSnapshot
from src.polymarket.errors import ErrorKind

logger = logging.getLogger(__name__)


class PositionManager:
    """
    Owns the open position map and is the only writer of the ledger.

    Features:
    - Timer-driven tick with an immediate first tick on start
    - Reactive stop-loss from the price stream's update channel
    - Per-token mutual exclusion of entry and exit
    - Positions rebuilt from the ledger on startup
    """

    def __init__(
        self,
        executor: OrderExecutor,
        ledger: TradeLedger,
        discovery: MarketDiscovery,
        config: TradingConfig,
        price_stream: Optional[PriceStream] = None,
        tracker: Optional[PositionTracker] = None,
        activity: Optional[ActivityRegistry] = None,
    ):
        """
        Initialize position manager.

        Args:
            executor: Order executor
            ledger: Trade ledger
            discovery: Source of tradable markets
            config: Trading configuration
            price_stream: Live prices (optional; REST order books are used without it)
            tracker: Position map (created if not given)
            activity: Per-token activity registry (created if not given)
        """
        self.executor = executor
        self.ledger = ledger
        self.discovery = discovery
        self.config = config
        self.price_stream = price_stream
        self.tracker = tracker or PositionTracker(config)
        self.activity = activity or ActivityRegistry()

        self.trading_enabled = True
        self.init_error: Optional[str] = None
        self.balance: Optional[float] = None
        self.markets: List[Market] = []
        self.last_scan: Optional[datetime] = None
        self.tick_count = 0

        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._reactive_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._tick_lock = asyncio.Lock()
        self._channel: Optional[PriceChannel] = (
            price_stream.open_channel(config.price_channel_size) if price_stream else None
        )

    # --- lifecycle -----------------------------------------------------------

    def load_open_positions(self) -> int:
        """Rebuild the position map from OPEN ledger records."""
        count = self.tracker.load(self.ledger.get_open_trades())
        self.tracker.consecutive_losses = self.ledger.get_consecutive_losses()
        return count

    def disable_trading(self, reason: str) -> None:
        """Stop placing orders for the rest of the session."""
        if self.trading_enabled:
            logger.critical(f"Trading disabled: {reason}")
        self.trading_enabled = False
        self.init_error = reason

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run one tick now, then start the timer and reactive tasks."""
        if self._running:
            logger.warning("PositionManager already started")
            return
        self._running = True
        self._stop_event = asyncio.Event()

        if self.price_stream:
            await self.price_stream.subscribe(p.token_id for p in self.tracker.all_positions())

        await self.tick()
        if not self._running:
            return

        self._timer_task = asyncio.create_task(self._timer_loop())
        if self._channel is not None:
            self._reactive_task = asyncio.create_task(self._reactive_loop())

        logger.info(
            f"PositionManager started (poll every {self.config.poll_interval_seconds}s, "
            f"{self.tracker.get_position_count()} open position(s))"
        )

    async def stop(self) -> None:
        """
        Stop the timer and reactive tasks. Resting exchange orders are left alone.

        Only idle waits are interrupted: a tick or stop-loss exit already in
        progress finishes, sell retries included, so the ledger records what
        the exchange did. Calling stop() again is a no-op.
        """
        if not self._running:
            return
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

        tasks = [t for t in (self._timer_task, self._reactive_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks)
        # A tick started by start() runs outside the tasks
        async with self._tick_lock:
            pass

        self._timer_task = None
        self._reactive_task = None
        logger.info("PositionManager stopped")

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Sleep up to timeout; True if stop() was called meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _timer_loop(self) -> None:
        while self._running:
            if await self._wait_for_stop(self.config.poll_interval_seconds):
                return
            await self.tick()

    async def _next_snapshot(self) -> Optional[PriceSnapshot]:
        """Next channel update, or None once stop() is called."""
        getter = asyncio.ensure_future(self._channel.get())
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (getter, stopper):
                if not waiter.done():
                    waiter.cancel()
        return getter.result() if getter in done else None

    async def _reactive_loop(self) -> None:
        """Evaluate stop-losses as soon as the stream reports a new price."""
        while self._running:
            snapshot = await self._next_snapshot()
            if snapshot is None or not self._running:
                return
            if not self.trading_enabled or not self.tracker.has_position(snapshot.token_id):
                continue
            if snapshot.best_bid <= 0:
                continue
            if snapshot.age() > self.config.ws_price_max_age_seconds:
                # Backlog: the tick re-reads a fresh price
                continue
            try:
                await self.evaluate_stop_loss(snapshot.token_id, bid=snapshot.best_bid)
            except Exception as e:
                logger.error(f"Reactive stop-loss check failed for {snapshot.token_id[:16]}...: {e}", exc_info=True)

    # --- tick ----------------------------------------------------------------

    async def tick(self) -> None:
        """One trading cycle. Errors are logged; the next tick proceeds."""
        async with self._tick_lock:
            await self._run_tick()

    async def _run_tick(self) -> None:
        self.tick_count += 1
        try:
            if not self.trading_enabled:
                logger.debug("Trading disabled, skipping tick")
                return

            await self.refresh_balance()
            await self.check_stop_losses()

            if self.config.place_profit_target:
                await self.place_profit_targets()

            if self.config.reconcile_every_ticks > 0 and self.tick_count % self.config.reconcile_every_ticks == 0:
                await self.reconcile()

            if self.balance is not None and self.balance > self.config.min_trade_balance_usd:
                await self.scan_for_entries()
            else:
                logger.debug(f"Balance {self.balance} too low to scan for entries")
        except Exception as e:
            logger.error(f"Tick {self.tick_count} failed: {e}", exc_info=True)

    async def refresh_balance(self) -> Optional[float]:
        balance = await self.executor.get_balance()
        if balance is not None:
            self.balance = balance
            open_cost = sum(p.shares * p.entry_price for p in self.tracker.all_positions())
            self.tracker.update_balance(balance + open_cost)
        return balance

    # --- exits ---------------------------------------------------------------

    async def check_stop_losses(self) -> None:
        for position in self.tracker.all_positions():
            await self.evaluate_stop_loss(position.token_id)

    async def current_bid(self, token_id: str) -> Optional[float]:
        """
        Freshest best bid for a token.

        Uses the stream snapshot when connected and younger than
        ws_price_max_age_seconds, otherwise queries the order book.
        """
        if self.price_stream and self.price_stream.is_connected:
            snapshot = self.price_stream.get_snapshot(token_id)
            if (
                snapshot
                and snapshot.best_bid > 0
                and snapshot.age() <= self.config.ws_price_max_age_seconds
            ):
                return snapshot.best_bid

        quote = await self.executor.get_quote(token_id)
        if quote is None or quote.bid <= 0:
            return None
        return quote.bid

    async def evaluate_stop_loss(self, token_id: str, bid: Optional[float] = None) -> bool:
        """
        Sell a position whose bid is at or below the stop-loss.

        Skips the token if an entry or exit is already in progress.

        Returns:
            True if an exit was attempted
        """
        with self.activity.claim(token_id, InstrumentActivity.EXITING) as claimed:
            if not claimed:
                return False

            position = self.tracker.get_position(token_id)
            if position is None or position.shares <= 0 or position.hold_to_resolution:
                return False

            if bid is None:
                bid = await self.current_bid(token_id)
            if bid is None:
                logger.warning(f"No price for {position.market_slug} ({token_id[:16]}...), stop-loss not evaluated")
                return False
            position.last_bid = bid

            if not should_stop_loss(bid, self.config.stop_loss):
                return False

            logger.warning(
                f"STOP-LOSS {position.market_slug} {position.side.value}: "
                f"bid {bid:.3f} <= {self.config.stop_loss:.2f}, selling {position.shares} shares"
            )
            await self._exit_position(position)
            return True

    async def _exit_position(self, position: Position) -> OrderResult:
        """Urgent sell; close the ledger record once the exit is complete."""
        if position.profit_order_id or self.config.place_profit_target:
            # Resting sells hold the shares the urgent sell needs
            await self.executor.cancel_token_orders(position.token_id)
            position.profit_order_id = None

        result = await self.executor.sell(position.token_id, position.shares)
        if not result.success:
            if result.is_fatal:
                self.disable_trading(result.error or "fatal sell error")
            elif result.error_kind == ErrorKind.VALIDATION:
                await self._hold_if_below_minimum(position)
            return result

        if not result.full_fill:
            sold = position.record_partial_exit(result.shares, result.price)
            self.ledger.record_partial_exit(position.trade_id, sold, result.price)
            logger.warning(
                f"Partial stop-loss fill on {position.market_slug}: sold {sold}, "
                f"{position.shares} remaining"
            )
            await self._hold_if_below_minimum(position)
            return result

        self._close_position(position, result.shares, result.price, TradeStatus.STOPPED)
        return result

    async def _hold_if_below_minimum(self, position: Position) -> None:
        """A remainder below the minimum order size cannot be sold; keep it until resolution."""
        rules = await self.executor.rules_cache.get_rules(position.token_id)
        if 0 < position.shares < rules.min_order_size:
            position.hold_to_resolution = True
            logger.warning(
                f"{position.market_slug}: {position.shares} shares left, below the "
                f"{rules.min_order_size} share minimum; holding until resolution"
            )

    def _close_position(
        self,
        position: Position,
        final_shares: float,
        final_price: float,
        status: TradeStatus,
    ) -> None:
        exit_price = position.average_exit_price(final_shares, final_price)
        total_shares = round(position.exited_shares + final_shares, 6)

        trade = self.ledger.close_trade(position.trade_id, exit_price, status, shares=total_shares)
        pnl = trade.pnl if trade and trade.pnl is not None else (exit_price - position.entry_price) * total_shares
        self.tracker.remove_position(position.token_id, pnl)

    async def place_profit_targets(self) -> None:
        """Rest a limit sell at profit_target for positions that lack one."""
        for position in self.tracker.all_positions():
            if position.profit_order_id or position.shares <= 0:
                continue
            with self.activity.claim(position.token_id, InstrumentActivity.EXITING) as claimed:
                if not claimed or not self.tracker.has_position(position.token_id):
                    continue
                result = await self.executor.limit_sell(
                    position.token_id, position.shares, self.config.profit_target
                )
                if result.success:
                    position.profit_order_id = result.order_id
                elif result.is_fatal:
                    self.disable_trading(result.error or "fatal limit sell error")

    # --- reconciliation ------------------------------------------------------

    async def reconcile(self) -> None:
        """
        Align open positions with the exchange.

        - Past end date + grace: close as RESOLVED at 1.0 if the last known
          price is >= 0.5, else 0.0
        - Exchange holds fewer shares than recorded: clamp the local count
        - Exchange balance catches up (late settlement): raise the local
          count again, never above what the ledger records
        """
        for position in self.tracker.all_positions():
            with self.activity.claim(position.token_id, InstrumentActivity.EXITING) as claimed:
                if not claimed or self.tracker.get_position(position.token_id) is not position:
                    continue

                remaining = seconds_until(position.market_end_date)
                if position.market_end_date is not None and remaining < -self.config.resolution_grace_seconds:
                    await self._resolve_position(position)
                    continue

                held = await self.executor.get_token_balance(position.token_id)
                if held is None:
                    continue

                target = min(position.recorded_shares, floor_shares(held))
                if abs(target - position.shares) < 1e-9:
                    continue

                if target > position.shares:
                    logger.info(
                        f"{position.market_slug}: exchange now holds {held} shares, "
                        f"restoring local count {position.shares} -> {target}"
                    )
                    position.shares = target
                    position.hold_to_resolution = False
                    continue

                logger.warning(
                    f"Desync on {position.market_slug}: ledger/local {position.shares} shares, "
                    f"exchange {held}; clamping to {target}"
                )
                position.shares = target
                if target <= 0:
                    logger.warning(
                        f"No exchange balance for trade #{position.trade_id}; leaving it OPEN until resolution"
                    )

    async def _resolve_position(self, position: Position) -> None:
        price = None
        if self.price_stream:
            snapshot = self.price_stream.get_snapshot(position.token_id)
            if snapshot:
                price = snapshot.price
        if price is None:
            price = position.last_bid
        if price is None:
            quote = await self.executor.get_quote(position.token_id)
            price = quote.mid if quote else None
        if price is None:
            logger.warning(f"Cannot resolve trade #{position.trade_id}: no price known")
            return

        settle = 1.0 if price >= 0.5 else 0.0
        logger.info(
            f"Resolving {position.market_slug} {position.side.value} at {settle:.0f} "
            f"(last price {price:.3f})"
        )
        self._close_position(position, position.shares, settle, TradeStatus.RESOLVED)

    # --- entries -------------------------------------------------------------

    async def scan_for_entries(self) -> None:
        if not self.trading_enabled:
            return
        can_open, reason = self.tracker.can_open_position()
        if not can_open:
            logger.debug(f"Not scanning: {reason}")
            return

        try:
            markets = await self.discovery.list_markets()
        except Exception as e:
            logger.warning(f"Market discovery failed: {e}")
            return

        self.markets = markets
        self.last_scan = utc_now()

        if self.price_stream:
            await self.price_stream.subscribe(t for m in markets for t in m.token_ids)

        threshold = self.tracker.current_entry_threshold()
        for market in markets:
            if not is_in_entry_window(seconds_until(market.end_date), self.config.time_window_seconds):
                continue
            if self.tracker.has_market(market.slug):
                continue

            quotes = await self._quotes_for(market)
            analysis = analyze_market(
                market,
                quotes,
                entry_threshold=threshold,
                max_entry_price=self.config.max_entry_price,
                max_spread=self.config.max_spread,
                time_window_seconds=self.config.time_window_seconds,
            )
            if not analysis.is_eligible:
                logger.debug(f"{market.slug}: {analysis.reason}")
                continue

            can_open, reason = self.tracker.can_open_position()
            if not can_open:
                logger.info(f"Skipping {market.slug}: {reason}")
                break

            await self.enter_position(analysis.signal)

    async def _quotes_for(self, market: Market) -> Dict[str, Quote]:
        """Stream quotes when fresh and two-sided, order book otherwise."""
        quotes: Dict[str, Quote] = {}
        for token_id in market.token_ids:
            snapshot = self.price_stream.get_snapshot(token_id) if self.price_stream else None
            if (
                snapshot
                and self.price_stream.is_connected
                and snapshot.has_real_spread
                and snapshot.age() <= self.config.ws_price_max_age_seconds
            ):
                quotes[token_id] = Quote(token_id=token_id, bid=snapshot.best_bid, ask=snapshot.best_ask)
                continue

            quote = await self.executor.get_quote(token_id)
            if quote:
                quotes[token_id] = quote
        return quotes

    async def enter_position(self, signal: EntrySignal) -> bool:
        """
        Buy an eligible side and record it.

        Returns:
            True if a position was opened
        """
        token_id = signal.token_id
        with self.activity.claim(token_id, InstrumentActivity.ENTERING) as claimed:
            if not claimed or self.tracker.has_position(token_id):
                return False

            balance = await self.executor.get_balance()
            if balance is None:
                return False
            self.balance = balance
            if balance <= self.config.min_trade_balance_usd:
                logger.info(f"Balance ${balance:.2f} too low to enter {signal.market.slug}")
                return False

            notional = balance
            if self.config.trade_amount_usd is not None:
                notional = min(balance, self.config.trade_amount_usd)

            logger.info(
                f"ENTRY {signal.market.slug} {signal.side.value} @ {signal.ask:.3f} "
                f"(spread {signal.spread:.3f}, {format_time_remaining(signal.time_remaining)} left, ${notional:.2f})"
            )

            result = await self.executor.buy(token_id, signal.ask, notional)
            if not result.success:
                if result.is_fatal:
                    self.disable_trading(result.error or "fatal buy error")
                logger.warning(f"Entry on {signal.market.slug} failed: {result.error}")
                return False

            trade_id = self.ledger.create_trade(
                market_slug=signal.market.slug,
                token_id=token_id,
                side=signal.side,
                entry_price=result.price,
                shares=result.shares,
                cost_basis=round(result.shares * result.price, 6),
                market_end_date=signal.market.end_date,
            )
            self.tracker.add_position(
                trade_id=trade_id,
                token_id=token_id,
                market_slug=signal.market.slug,
                side=signal.side,
                shares=result.shares,
                entry_price=result.price,
                market_end_date=signal.market.end_date,
            )
            return True

    # --- status --------------------------------------------------------------

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "trading_enabled": self.trading_enabled,
            "init_error": self.init_error,
            "balance": self.balance,
            "tick_count": self.tick_count,
            "last_scan": self.last_scan.isoformat() if self.last_scan else None,
            "markets": len(self.markets),
            "entry_threshold": self.tracker.current_entry_threshold(),
            "consecutive_losses": self.tracker.consecutive_losses,
            "session_pnl": self.tracker.total_pnl,
            "positions": [
                {
                    "trade_id": p.trade_id,
                    "market_slug": p.market_slug,
                    "side": p.side.value,
                    "shares": p.shares,
                    "entry_price": p.entry_price,
                    "last_bid": p.last_bid,
                    "activity": self.activity.state(p.token_id).value,
                }
                for p in self.tracker.all_positions()
            ],
            "stream": self.price_stream.get_status() if self.price_stream else None,
        }
