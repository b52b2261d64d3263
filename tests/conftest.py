"""Pytest fixtures and configuration."""

import os
import sys
from datetime import timedelta
from types import SimpleNamespace

import pytest
from dotenv import load_dotenv

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load environment variables
load_dotenv()

from live_trading.config import TradingConfig  # noqa: E402
from live_trading.db.ledger import TradeLedger, init_ledger_schema  # noqa: E402
from live_trading.market_data import Market  # noqa: E402
from live_trading.market_rules import MarketRulesCache  # noqa: E402
from live_trading.order_executor import OrderExecutor  # noqa: E402
from live_trading.utils import utc_now  # noqa: E402
from src.db.connection import create_db_engine, get_session_factory  # noqa: E402
from src.polymarket.errors import ErrorKind, ExchangeError  # noqa: E402
from src.polymarket.schemas import (  # noqa: E402
    CancelResponse,
    OrderBook,
    OrderResponse,
    OrderSide,
    OrderStatus,
    OrderType,
    PriceLevel,
)


class FakeExchange:
    """
    In-memory exchange implementing the ExchangeClient protocol.

    Orders fill completely unless a matched size is queued in fill_sizes.
    Queued OrderResponses in responses replace the default acceptance.
    """

    def __init__(self, collateral: float = 100.0):
        self.collateral = collateral
        self.token_balances = {}
        self.books = {}
        self.responses = []
        self.fill_sizes = []
        self.statuses = {}
        self.placed = []
        self.cancelled = []
        self.book_requests = 0
        self.connect_error = None
        self.balance_error = None
        self._next_id = 0

    def set_book(self, token_id, bid, ask, min_order_size=5.0, tick_size=0.01):
        bids = [PriceLevel(price=bid, size=100)] if bid else []
        asks = [PriceLevel(price=ask, size=100)] if ask < 1 else []
        self.books[token_id] = OrderBook(
            token_id=token_id,
            bids=bids,
            asks=asks,
            min_order_size=min_order_size,
            tick_size=tick_size,
        )

    async def connect(self):
        if self.connect_error:
            raise self.connect_error

    async def get_collateral_balance(self):
        if self.balance_error:
            raise self.balance_error
        return self.collateral

    async def get_token_balance(self, token_id):
        return self.token_balances.get(token_id, 0.0)

    async def get_order_book(self, token_id):
        self.book_requests += 1
        if token_id not in self.books:
            raise ExchangeError(ErrorKind.TRANSIENT, f"get order book: no book for {token_id}")
        return self.books[token_id]

    async def place_order(self, token_id, price, size, side, order_type=OrderType.GTC):
        self.placed.append(SimpleNamespace(
            token_id=token_id, price=price, size=size, side=side, order_type=order_type
        ))
        if self.responses:
            response = self.responses.pop(0)
        else:
            self._next_id += 1
            response = OrderResponse(success=True, order_id=f"order-{self._next_id}")
        if not response.success:
            return response

        matched = self.fill_sizes.pop(0) if self.fill_sizes else size
        if matched >= size:
            status = "MATCHED"
        elif order_type == OrderType.GTC:
            status = "LIVE"
        else:
            status = "CANCELED"
        self.statuses[response.order_id] = OrderStatus(
            id=response.order_id,
            status=status,
            original_size=size,
            size_matched=matched,
            price=price,
        )

        if side == OrderSide.BUY:
            self.token_balances[token_id] = self.token_balances.get(token_id, 0.0) + matched
            self.collateral = round(self.collateral - matched * price, 6)
        else:
            self.token_balances[token_id] = self.token_balances.get(token_id, 0.0) - matched
            self.collateral = round(self.collateral + matched * price, 6)
        return response

    async def get_order(self, order_id):
        if order_id not in self.statuses:
            raise ExchangeError(ErrorKind.VALIDATION, f"get order: {order_id} not found")
        return self.statuses[order_id]

    async def cancel_order(self, order_id):
        self.cancelled.append(order_id)
        return CancelResponse(canceled=[order_id])

    async def cancel_token_orders(self, token_id):
        self.cancelled.append(token_id)
        return CancelResponse()

    async def cancel_all(self):
        self.cancelled.append("*")
        return CancelResponse()


class FakeDiscovery:
    def __init__(self, markets=None):
        self.markets = list(markets or [])
        self.calls = 0

    async def list_markets(self):
        self.calls += 1
        return list(self.markets)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def discovery():
    return FakeDiscovery()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def trading_config():
    """Normal mode with zero retry waits and no fill polling delay."""
    return TradingConfig.for_mode(
        "normal",
        retry_min_wait_seconds=0.0,
        retry_max_wait_seconds=0.0,
        fill_timeout_seconds=0.0,
        fill_poll_interval_seconds=0.0,
    )


@pytest.fixture
def executor(exchange, trading_config):
    rules_cache = MarketRulesCache(exchange)
    return OrderExecutor.from_config(exchange, rules_cache, trading_config)


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with the ledger schema."""
    engine = create_db_engine("sqlite://")
    init_ledger_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory(db_engine)


@pytest.fixture
def ledger(session_factory):
    return TradeLedger(session_factory)


@pytest.fixture
def make_market():
    """Factory for up/down markets ending seconds_left from now."""

    def _make(slug="btc-updown-5m-1", seconds_left=120, up="up-token", down="down-token"):
        return Market(
            slug=slug,
            question=f"Bitcoin Up or Down? ({slug})",
            end_date=utc_now() + timedelta(seconds=seconds_left),
            outcomes='["Up", "Down"]',
            token_ids=f'["{up}", "{down}"]',
        )

    return _make
