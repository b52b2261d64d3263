"""
Tests for the trading loop.

Runs the position manager against the in-memory exchange and an
in-memory ledger: entries, stop-loss exits, reconciliation and lifecycle.
"""

import asyncio
import json
import time
from datetime import timedelta

import pytest

from live_trading.activity import InstrumentActivity
from live_trading.config import TradingConfig
from live_trading.db.models import TradeSide, TradeStatus
from live_trading.order_executor import OrderExecutor
from live_trading.market_rules import MarketRulesCache
from live_trading.position_manager import PositionManager
from live_trading.utils import utc_now
from live_trading.websocket.handler import PriceStream
from live_trading.websocket.order_book import PriceSnapshot
from src.polymarket.errors import ErrorKind, ExchangeError
from src.polymarket.schemas import OrderResponse, OrderSide, OrderType

TOKEN = "up-token"


def make_manager(exchange, ledger, discovery, config, price_stream=None):
    executor = OrderExecutor.from_config(exchange, MarketRulesCache(exchange), config)
    return PositionManager(executor, ledger, discovery, config, price_stream=price_stream)


def open_position(ledger, exchange, token=TOKEN, entry=0.95, shares=10.0, ends_in=120):
    exchange.token_balances[token] = shares
    return ledger.create_trade(
        market_slug="btc-updown-5m-1",
        token_id=token,
        side=TradeSide.UP,
        entry_price=entry,
        shares=shares,
        cost_basis=round(entry * shares, 6),
        market_end_date=utc_now() + timedelta(seconds=ends_in),
    )


@pytest.fixture
def manager(exchange, ledger, discovery, trading_config):
    return make_manager(exchange, ledger, discovery, trading_config)


class TestEntries:

    def test_tick_enters_eligible_market(self, manager, exchange, ledger, discovery, make_market):
        discovery.markets = [make_market()]
        exchange.set_book("up-token", 0.95, 0.96)
        exchange.set_book("down-token", 0.03, 0.05)

        asyncio.run(manager.tick())

        trades = ledger.get_open_trades()
        assert len(trades) == 1
        trade = trades[0]
        assert trade.side == TradeSide.UP
        assert trade.entry_price == 0.96
        assert trade.shares == 104.16
        assert trade.cost_basis == pytest.approx(104.16 * 0.96)
        assert manager.tracker.has_position("up-token")
        assert exchange.placed[0].side == OrderSide.BUY

    def test_trade_amount_caps_notional(self, exchange, ledger, discovery, trading_config, make_market):
        trading_config.trade_amount_usd = 10.0
        manager = make_manager(exchange, ledger, discovery, trading_config)
        discovery.markets = [make_market()]
        exchange.set_book("up-token", 0.95, 0.96)

        asyncio.run(manager.tick())

        assert exchange.placed[0].size == 10.41

    def test_one_position_per_market(self, exchange, ledger, discovery, trading_config, make_market):
        trading_config.trade_amount_usd = 10.0
        trading_config.max_positions = 3
        manager = make_manager(exchange, ledger, discovery, trading_config)
        discovery.markets = [make_market()]
        exchange.set_book("up-token", 0.95, 0.96)
        exchange.set_book("down-token", 0.95, 0.96)

        asyncio.run(manager.tick())
        asyncio.run(manager.tick())

        assert len(ledger.get_open_trades()) == 1

    def test_no_entry_outside_window(self, manager, exchange, ledger, discovery, make_market):
        discovery.markets = [make_market(seconds_left=900)]
        exchange.set_book("up-token", 0.95, 0.96)

        asyncio.run(manager.tick())

        assert exchange.placed == []

    def test_rejected_buy_records_nothing(self, manager, exchange, ledger, discovery, make_market):
        discovery.markets = [make_market()]
        exchange.set_book("up-token", 0.95, 0.96)
        exchange.responses = [OrderResponse.failure("invalid tick size", ErrorKind.VALIDATION)]

        asyncio.run(manager.tick())

        assert ledger.get_open_trades() == []
        assert not manager.tracker.has_position("up-token")
        assert manager.trading_enabled

    def test_balance_failure_skips_scan(self, manager, exchange, discovery):
        exchange.balance_error = ExchangeError(ErrorKind.TRANSIENT, "timeout")
        asyncio.run(manager.tick())
        assert discovery.calls == 0


class TestStopLoss:

    def test_stop_loss_sells_and_closes(self, manager, exchange, ledger):
        trade_id = open_position(ledger, exchange)
        exchange.set_book(TOKEN, 0.78, 0.80)
        manager.load_open_positions()

        asyncio.run(manager.tick())

        trade = ledger.get_trade(trade_id)
        assert trade.status == TradeStatus.STOPPED
        assert trade.exit_price == pytest.approx(0.78)
        assert trade.pnl == pytest.approx(-1.7)
        assert not manager.tracker.has_position(TOKEN)
        assert manager.tracker.consecutive_losses == 1
        assert exchange.placed[0].order_type == OrderType.FOK

    def test_bid_above_stop_holds(self, manager, exchange, ledger):
        trade_id = open_position(ledger, exchange)
        exchange.set_book(TOKEN, 0.81, 0.83)
        manager.load_open_positions()

        asyncio.run(manager.tick())

        assert ledger.get_trade(trade_id).is_open
        assert exchange.placed == []
        assert manager.tracker.get_position(TOKEN).last_bid == 0.81

    def test_partial_fill_keeps_position_open(self, manager, exchange, ledger):
        trade_id = open_position(ledger, exchange)
        exchange.set_book(TOKEN, 0.78, 0.80)
        exchange.fill_sizes = [0, 4.0]
        manager.load_open_positions()

        asyncio.run(manager.tick())

        assert ledger.get_trade(trade_id).is_open
        assert manager.tracker.get_position(TOKEN).shares == 6.0

        asyncio.run(manager.tick())

        trade = ledger.get_trade(trade_id)
        assert trade.status == TradeStatus.STOPPED
        assert trade.shares == 10.0
        assert trade.exit_price == pytest.approx(0.78)

    def test_partial_exit_survives_restart(self, manager, exchange, ledger, discovery, trading_config):
        trade_id = open_position(ledger, exchange)
        exchange.set_book(TOKEN, 0.70, 0.72)
        exchange.fill_sizes = [0, 4.0]
        manager.load_open_positions()

        asyncio.run(manager.tick())

        trade = ledger.get_trade(trade_id)
        assert trade.is_open
        assert trade.exited_shares == 4.0
        assert trade.exit_proceeds == pytest.approx(2.8)

        restarted = make_manager(exchange, ledger, discovery, trading_config)
        restarted.load_open_positions()
        position = restarted.tracker.get_position(TOKEN)
        assert position.shares == 6.0
        assert position.exited_shares == 4.0

        exchange.set_book(TOKEN, 0.60, 0.62)
        asyncio.run(restarted.tick())

        trade = ledger.get_trade(trade_id)
        assert trade.status == TradeStatus.STOPPED
        assert trade.shares == 10.0
        assert trade.exit_price == pytest.approx(0.64)
        assert trade.pnl == pytest.approx(-3.10)

    def test_remainder_below_minimum_held_to_resolution(self, manager, exchange, ledger):
        trade_id = open_position(ledger, exchange)
        exchange.set_book(TOKEN, 0.78, 0.80, min_order_size=5)
        exchange.fill_sizes = [0, 6.0]
        manager.load_open_positions()

        asyncio.run(manager.tick())

        position = manager.tracker.get_position(TOKEN)
        assert position.shares == 4.0
        assert position.hold_to_resolution
        placed = len(exchange.placed)

        asyncio.run(manager.tick())

        assert len(exchange.placed) == placed
        assert ledger.get_trade(trade_id).is_open

    def test_busy_token_is_skipped(self, manager, exchange, ledger):
        open_position(ledger, exchange)
        exchange.set_book(TOKEN, 0.50, 0.55)
        manager.load_open_positions()
        manager.activity.try_begin(TOKEN, InstrumentActivity.ENTERING)

        assert asyncio.run(manager.evaluate_stop_loss(TOKEN, bid=0.50)) is False
        assert exchange.placed == []

    def test_fatal_sell_disables_trading(self, manager, exchange, ledger, discovery):
        open_position(ledger, exchange)
        exchange.set_book(TOKEN, 0.78, 0.80)
        exchange.responses = [OrderResponse.failure("Unauthorized/Invalid api key", ErrorKind.FATAL)]
        manager.load_open_positions()

        asyncio.run(manager.tick())
        assert not manager.trading_enabled
        assert len(exchange.placed) == 1

        asyncio.run(manager.tick())
        assert len(exchange.placed) == 1

    def test_profit_target_cancelled_before_urgent_exit(self, exchange, ledger, discovery, trading_config):
        trading_config.place_profit_target = True
        manager = make_manager(exchange, ledger, discovery, trading_config)
        open_position(ledger, exchange)
        exchange.set_book(TOKEN, 0.90, 0.92)
        exchange.fill_sizes = [0]
        manager.load_open_positions()

        asyncio.run(manager.tick())
        position = manager.tracker.get_position(TOKEN)
        assert position.profit_order_id is not None
        assert exchange.placed[0].order_type == OrderType.GTC

        exchange.set_book(TOKEN, 0.78, 0.80)
        asyncio.run(manager.tick())

        assert TOKEN in exchange.cancelled
        assert not manager.tracker.has_position(TOKEN)


class TestReconcile:

    def test_expired_winner_resolves_at_one(self, manager, exchange, ledger):
        trade_id = open_position(ledger, exchange, ends_in=-120)
        exchange.set_book(TOKEN, 0.97, 0.99)
        manager.load_open_positions()

        asyncio.run(manager.reconcile())

        trade = ledger.get_trade(trade_id)
        assert trade.status == TradeStatus.RESOLVED
        assert trade.exit_price == 1.0
        assert trade.pnl == pytest.approx(0.5)

    def test_expired_loser_resolves_at_zero(self, manager, exchange, ledger):
        trade_id = open_position(ledger, exchange, ends_in=-120)
        exchange.set_book(TOKEN, 0.01, 0.03)
        manager.load_open_positions()

        asyncio.run(manager.reconcile())

        trade = ledger.get_trade(trade_id)
        assert trade.exit_price == 0.0
        assert trade.pnl == pytest.approx(-9.5)

    def test_within_grace_stays_open(self, manager, exchange, ledger):
        trade_id = open_position(ledger, exchange, ends_in=-10)
        exchange.set_book(TOKEN, 0.97, 0.99)
        manager.load_open_positions()

        asyncio.run(manager.reconcile())

        assert ledger.get_trade(trade_id).is_open

    def test_clamps_to_exchange_balance(self, manager, exchange, ledger):
        trade_id = open_position(ledger, exchange)
        exchange.token_balances[TOKEN] = 6.0
        manager.load_open_positions()

        asyncio.run(manager.reconcile())

        assert manager.tracker.get_position(TOKEN).shares == 6.0
        assert ledger.get_trade(trade_id).is_open

    def test_late_balance_restores_stop_loss(self, manager, exchange, ledger):
        trade_id = open_position(ledger, exchange)
        exchange.token_balances[TOKEN] = 0.0
        manager.load_open_positions()

        asyncio.run(manager.reconcile())
        assert manager.tracker.get_position(TOKEN).shares == 0.0

        exchange.token_balances[TOKEN] = 10.0
        asyncio.run(manager.reconcile())
        assert manager.tracker.get_position(TOKEN).shares == 10.0

        exchange.set_book(TOKEN, 0.50, 0.52)
        assert asyncio.run(manager.evaluate_stop_loss(TOKEN)) is True
        assert ledger.get_trade(trade_id).status == TradeStatus.STOPPED

    def test_restore_capped_at_ledger_shares(self, manager, exchange, ledger):
        open_position(ledger, exchange)
        exchange.token_balances[TOKEN] = 6.0
        manager.load_open_positions()
        asyncio.run(manager.reconcile())

        exchange.token_balances[TOKEN] = 15.0
        asyncio.run(manager.reconcile())

        assert manager.tracker.get_position(TOKEN).shares == 10.0

    def test_restart_restores_positions_and_streak(self, exchange, ledger, discovery, trading_config):
        lost = open_position(ledger, exchange, token="old")
        ledger.close_trade(lost, 0.78, TradeStatus.STOPPED)
        open_position(ledger, exchange)

        manager = make_manager(exchange, ledger, discovery, trading_config)
        assert manager.load_open_positions() == 1
        assert manager.tracker.has_position(TOKEN)
        assert manager.tracker.consecutive_losses == 1


class TestLifecycle:

    def test_start_runs_tick_and_stop_is_idempotent(self, manager, discovery):
        async def scenario():
            await manager.start()
            assert manager.is_running
            await manager.stop()
            await manager.stop()

        asyncio.run(scenario())
        assert discovery.calls == 1
        assert not manager.is_running

    def test_stream_update_triggers_stop_loss(self, exchange, ledger, discovery, trading_config):
        stream = PriceStream()
        manager = make_manager(exchange, ledger, discovery, trading_config, price_stream=stream)
        trade_id = open_position(ledger, exchange)
        exchange.set_book(TOKEN, 0.90, 0.92)
        manager.load_open_positions()

        async def scenario():
            await manager.start()
            assert TOKEN in stream.subscriptions
            assert ledger.get_trade(trade_id).is_open

            exchange.set_book(TOKEN, 0.78, 0.80)
            await stream._handle_message(json.dumps({
                "event_type": "price_change",
                "asset_id": TOKEN,
                "best_bid": "0.78",
                "best_ask": "0.80",
            }))

            deadline = time.monotonic() + 1.0
            while ledger.get_trade(trade_id).is_open and time.monotonic() < deadline:
                await asyncio.sleep(0.01)
            await manager.stop()

        asyncio.run(scenario())
        assert ledger.get_trade(trade_id).status == TradeStatus.STOPPED

    def test_stop_lets_inflight_exit_finish(self, exchange, ledger, discovery, trading_config):
        stream = PriceStream()
        manager = make_manager(exchange, ledger, discovery, trading_config, price_stream=stream)
        trade_id = open_position(ledger, exchange)
        exchange.set_book(TOKEN, 0.90, 0.92)
        manager.load_open_positions()

        polls = []
        get_order = exchange.get_order

        async def slow_get_order(order_id):
            polls.append(order_id)
            await asyncio.sleep(0.2)
            return await get_order(order_id)

        exchange.get_order = slow_get_order

        async def scenario():
            await manager.start()
            exchange.set_book(TOKEN, 0.78, 0.80)
            await stream._handle_message(json.dumps({
                "event_type": "price_change",
                "asset_id": TOKEN,
                "best_bid": "0.78",
                "best_ask": "0.80",
            }))

            deadline = time.monotonic() + 1.0
            while not polls and time.monotonic() < deadline:
                await asyncio.sleep(0.01)
            await manager.stop()

        asyncio.run(scenario())

        assert polls
        assert exchange.token_balances[TOKEN] == 0.0
        assert ledger.get_trade(trade_id).status == TradeStatus.STOPPED
        assert not manager.tracker.has_position(TOKEN)

    def test_stop_waits_for_first_tick(self, manager, exchange, ledger):
        trade_id = open_position(ledger, exchange)
        exchange.set_book(TOKEN, 0.78, 0.80)
        manager.load_open_positions()

        polls = []
        get_order = exchange.get_order

        async def slow_get_order(order_id):
            polls.append(order_id)
            await asyncio.sleep(0.2)
            return await get_order(order_id)

        exchange.get_order = slow_get_order

        async def scenario():
            starting = asyncio.create_task(manager.start())
            deadline = time.monotonic() + 1.0
            while not polls and time.monotonic() < deadline:
                await asyncio.sleep(0.01)
            await manager.stop()
            status = ledger.get_trade(trade_id).status
            await starting
            return status

        assert asyncio.run(scenario()) == TradeStatus.STOPPED
        assert not manager.is_running

    def test_stale_stream_update_ignored(self, exchange, ledger, discovery, trading_config):
        stream = PriceStream()
        manager = make_manager(exchange, ledger, discovery, trading_config, price_stream=stream)
        trade_id = open_position(ledger, exchange)
        exchange.set_book(TOKEN, 0.90, 0.92)
        manager.load_open_positions()

        async def scenario():
            await manager.start()
            stale = PriceSnapshot(
                token_id=TOKEN,
                price=0.79,
                best_bid=0.78,
                best_ask=0.80,
                updated_at=time.monotonic() - 60,
            )
            manager._channel.put(stale)
            await asyncio.sleep(0.1)
            await manager.stop()

        asyncio.run(scenario())

        assert ledger.get_trade(trade_id).is_open
        assert exchange.placed == []

    def test_status(self, manager, exchange, ledger):
        open_position(ledger, exchange)
        manager.load_open_positions()
        status = manager.get_status()
        assert status["trading_enabled"]
        assert status["positions"][0]["activity"] == "idle"
        assert status["stream"] is None


def test_disabled_manager_places_nothing(exchange, ledger, discovery, make_market):
    manager = make_manager(exchange, ledger, discovery, TradingConfig())
    manager.disable_trading("no credentials")
    discovery.markets = [make_market()]
    exchange.set_book("up-token", 0.95, 0.96)

    asyncio.run(manager.tick())

    assert exchange.placed == []
    assert manager.init_error == "no credentials"
