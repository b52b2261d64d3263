"""
Polymarket CLOB client adapter

Wraps the synchronous py-clob-client in async methods that run in a worker
thread, share one adaptive rate limiter, and classify every failure into an
ErrorKind at this boundary.

Features:
- Adaptive rate limiting (acquire before each request, backs off on 429)
- L2 API credential derivation from the wallet key
- Balances returned in USD / shares (the API reports 6-decimal base units)
"""

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    AssetType,
    BalanceAllowanceParams,
    OrderArgs,
    OrderType as ClobOrderType,
)
from py_clob_client.exceptions import PolyApiException, PolyException
from py_clob_client.order_builder.constants import BUY, SELL

from src.polymarket.errors import ErrorKind, ExchangeError, classify_error
from src.polymarket.schemas import (
    CancelResponse,
    OrderBook,
    OrderResponse,
    OrderSide,
    OrderStatus,
    OrderType,
)
from src.utils.rate_limiter import AdaptiveRateLimiter, get_clob_rate_limiter

logger = logging.getLogger(__name__)

CLOB_HOST = "https://clob.polymarket.com"
POLYGON_CHAIN_ID = 137
USDC_DECIMALS = 1_000_000


class ExchangeClient(Protocol):
    """Operations the trading engine needs from an exchange."""

    async def get_collateral_balance(self) -> float: ...

    async def get_token_balance(self, token_id: str) -> float: ...

    async def get_order_book(self, token_id: str) -> OrderBook: ...

    async def place_order(
        self,
        token_id: str,
        price: float,
        size: float,
        side: OrderSide,
        order_type: OrderType,
    ) -> OrderResponse: ...

    async def get_order(self, order_id: str) -> OrderStatus: ...

    async def cancel_order(self, order_id: str) -> CancelResponse: ...

    async def cancel_token_orders(self, token_id: str) -> CancelResponse: ...

    async def cancel_all(self) -> CancelResponse: ...


class PolymarketClient:
    """Async client for the Polymarket CLOB with adaptive rate limiting."""

    def __init__(
        self,
        private_key: Optional[str] = None,
        host: str = CLOB_HOST,
        chain_id: int = POLYGON_CHAIN_ID,
        signature_type: int = 0,
        funder: Optional[str] = None,
        rate_limiter: Optional[AdaptiveRateLimiter] = None,
        acquire_timeout: float = 10.0,
        clob_client: Optional[ClobClient] = None,
    ):
        """
        Initialize the CLOB client.

        Args:
            private_key: Wallet private key used to sign orders. Without it
                only public endpoints (order books) work.
            host: CLOB REST host
            chain_id: Polygon chain id
            signature_type: 0 = EOA, 1 = email/magic proxy, 2 = browser proxy
            funder: Proxy wallet address holding the funds, if any
            rate_limiter: Shared rate limiter. If None, creates the default one.
            acquire_timeout: Max seconds to wait for a rate limit token
            clob_client: Pre-built py-clob-client instance (tests)
        """
        self.host = host.rstrip("/")
        self.signature_type = signature_type
        self.has_key = bool(private_key)
        self.acquire_timeout = acquire_timeout
        self.rate_limiter = rate_limiter or get_clob_rate_limiter()
        self.connected = False

        if clob_client is not None:
            self._clob = clob_client
        elif private_key:
            self._clob = ClobClient(
                self.host,
                key=private_key,
                chain_id=chain_id,
                signature_type=signature_type,
                funder=funder,
            )
        else:
            self._clob = ClobClient(self.host, chain_id=chain_id)

        logger.info(
            f"Polymarket client initialized: {self.host} "
            f"(rate: {self.rate_limiter.current_rate:.1f} req/sec, "
            f"signing: {'yes' if self.has_key else 'no'})"
        )

    async def connect(self) -> None:
        """
        Derive (or create) L2 API credentials and attach them to the client.

        Raises:
            ExchangeError: FATAL when no key is configured or derivation fails
        """
        if not self.has_key:
            raise ExchangeError(ErrorKind.FATAL, "No private key configured, trading unavailable")

        def derive():
            creds = self._clob.create_or_derive_api_creds()
            self._clob.set_api_creds(creds)

        try:
            await self._call("derive api creds", derive)
        except ExchangeError as e:
            # Any credential failure ends trading for the session
            raise ExchangeError(ErrorKind.FATAL, f"Could not derive API credentials: {e.message}", e.status_code) from e
        except Exception as e:
            raise ExchangeError(ErrorKind.FATAL, f"Could not derive API credentials: {e}") from e

        self.connected = True
        logger.info("Polymarket API credentials ready")

    async def _call(self, label: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Run a blocking py-clob-client call with rate limiting and error classification.

        Raises:
            ExchangeError: classified failure
        """
        if not await self.rate_limiter.acquire(timeout=self.acquire_timeout):
            raise ExchangeError(ErrorKind.TRANSIENT, f"{label}: rate limiter timeout")

        try:
            result = await asyncio.to_thread(fn, *args, **kwargs)
        except PolyApiException as e:
            status = getattr(e, "status_code", None)
            message = str(getattr(e, "error_msg", None) or e)
            self.rate_limiter.report_error(is_rate_limit=status == 429)
            kind = classify_error(message, status)
            logger.warning(f"{label} failed ({kind.value}, status={status}): {message}")
            raise ExchangeError(kind, f"{label}: {message}", status) from e
        except PolyException as e:
            # Raised before any request is sent (missing L1/L2 credentials)
            message = str(getattr(e, "msg", None) or e)
            kind = classify_error(message)
            logger.warning(f"{label} failed ({kind.value}): {message}")
            raise ExchangeError(kind, f"{label}: {message}") from e
        except (OSError, TimeoutError) as e:
            self.rate_limiter.report_error(is_rate_limit=False)
            logger.warning(f"{label} failed (network): {e}")
            raise ExchangeError(ErrorKind.TRANSIENT, f"{label}: {e}") from e

        self.rate_limiter.report_success()
        return result

    # --- balances -----------------------------------------------------------

    async def get_collateral_balance(self) -> float:
        """USDC balance available for trading, in USD."""
        params = BalanceAllowanceParams(
            asset_type=AssetType.COLLATERAL,
            signature_type=self.signature_type,
        )
        data = await self._call("get balance", self._clob.get_balance_allowance, params=params)
        return _parse_base_units((data or {}).get("balance"))

    async def get_token_balance(self, token_id: str) -> float:
        """Outcome token shares held in the wallet."""
        params = BalanceAllowanceParams(
            asset_type=AssetType.CONDITIONAL,
            token_id=token_id,
            signature_type=self.signature_type,
        )
        data = await self._call("get token balance", self._clob.get_balance_allowance, params=params)
        return _parse_base_units((data or {}).get("balance"))

    # --- market data ---------------------------------------------------------

    async def get_order_book(self, token_id: str) -> OrderBook:
        summary = await self._call("get order book", self._clob.get_order_book, token_id)
        return OrderBook.from_summary(token_id, summary)

    # --- orders --------------------------------------------------------------

    async def place_order(
        self,
        token_id: str,
        price: float,
        size: float,
        side: OrderSide,
        order_type: OrderType = OrderType.GTC,
    ) -> OrderResponse:
        """
        Sign and post an order.

        Failures are returned as an unsuccessful OrderResponse with an
        error kind instead of being raised.
        """
        args = OrderArgs(
            token_id=token_id,
            price=price,
            size=size,
            side=BUY if side == OrderSide.BUY else SELL,
        )
        clob_type = getattr(ClobOrderType, order_type.value)

        def submit():
            signed = self._clob.create_order(args)
            return self._clob.post_order(signed, clob_type)

        logger.info(f"Posting {order_type.value} {side.value} {size} @ {price} on {token_id[:16]}...")
        try:
            data = await self._call("post order", submit)
        except ExchangeError as e:
            return OrderResponse.failure(e.message, e.kind)
        except Exception as e:
            # create_order raises plain Exception for bad price/tick and "no match"
            kind = classify_error(str(e))
            logger.warning(f"post order failed ({kind.value}): {e}")
            return OrderResponse.failure(f"post order: {e}", kind)
        return OrderResponse.from_api(data)

    async def get_order(self, order_id: str) -> OrderStatus:
        data = await self._call("get order", self._clob.get_order, order_id)
        if not data:
            raise ExchangeError(ErrorKind.TRANSIENT, f"get order: no data for {order_id}")
        data = dict(data)
        data.setdefault("id", order_id)
        return OrderStatus(**data)

    async def cancel_order(self, order_id: str) -> CancelResponse:
        data = await self._call("cancel order", self._clob.cancel, order_id)
        return CancelResponse(**(data or {}))

    async def cancel_token_orders(self, token_id: str) -> CancelResponse:
        data = await self._call("cancel token orders", self._clob.cancel_market_orders, asset_id=token_id)
        return CancelResponse(**(data or {}))

    async def cancel_all(self) -> CancelResponse:
        data = await self._call("cancel all", self._clob.cancel_all)
        return CancelResponse(**(data or {}))


def _parse_base_units(raw: Any) -> float:
    """Convert a 6-decimal base unit string ("12500000") to a float (12.5)."""
    try:
        return float(raw or 0) / USDC_DECIMALS
    except (TypeError, ValueError):
        raise ExchangeError(ErrorKind.TRANSIENT, f"Unparseable balance: {raw!r}")
