"""
WebSocket price stream for the Polymarket market channel.

Provides:
- Connection state machine (DISCONNECTED -> CONNECTING -> CONNECTED)
- Fixed-delay reconnection and "PING" keepalive
- Subscription tracking and resubscription of the full set on every connect
- Snapshot updates pushed to registered handlers and bounded channels
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from live_trading.websocket.order_book import PriceBook, PriceSnapshot

logger = logging.getLogger(__name__)

MARKET_WS_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"

SnapshotHandler = Callable[[PriceSnapshot], Awaitable[None]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class PriceChannel:
    """
    Bounded queue of snapshot updates for one consumer.

    When full, the oldest update is dropped to make room; consumers only
    care about the latest prices.
    """

    def __init__(self, maxsize: int = 1000):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def put(self, snapshot: PriceSnapshot) -> None:
        while True:
            try:
                self.queue.put_nowait(snapshot)
                return
            except asyncio.QueueFull:
                try:
                    self.queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def get(self) -> PriceSnapshot:
        return await self.queue.get()

    def qsize(self) -> int:
        return self.queue.qsize()


class PriceStream:
    """
    Polymarket market channel client with auto-reconnection.

    Owns the subscription set and the snapshot map (PriceBook). Everything
    runs on the event loop that called start().
    """

    def __init__(
        self,
        ws_url: str = MARKET_WS_URL,
        reconnect_delay: float = 3.0,
        keepalive_interval: float = 10.0,
        connect_timeout: float = 10.0,
        connect: Callable[..., Any] = websockets.connect,
        book: Optional[PriceBook] = None,
    ):
        """
        Initialize price stream.

        Args:
            ws_url: Market channel URL
            reconnect_delay: Seconds to wait before reconnecting
            keepalive_interval: Seconds between "PING" messages
            connect_timeout: Max seconds for the opening handshake
            connect: websockets.connect-compatible factory
            book: Snapshot map (created if not given)
        """
        self.ws_url = ws_url
        self.reconnect_delay = reconnect_delay
        self.keepalive_interval = keepalive_interval
        self.connect_timeout = connect_timeout
        self._connect = connect

        self.book = book or PriceBook()
        self.subscriptions: Set[str] = set()
        self.state = ConnectionState.DISCONNECTED

        self.ws = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None

        self.handlers: List[SnapshotHandler] = []
        self.channels: List[PriceChannel] = []

    # --- consumers -----------------------------------------------------------

    def register_handler(self, handler: SnapshotHandler) -> None:
        """Register an async handler called with every updated snapshot."""
        self.handlers.append(handler)
        logger.debug(f"Registered snapshot handler {getattr(handler, '__name__', handler)}")

    def open_channel(self, maxsize: int = 1000) -> PriceChannel:
        """Open a bounded channel that receives every updated snapshot."""
        channel = PriceChannel(maxsize=maxsize)
        self.channels.append(channel)
        return channel

    def get_snapshot(self, token_id: str) -> Optional[PriceSnapshot]:
        return self.book.get(token_id)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    # --- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Start the connection loop as a background task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Price stream started ({self.ws_url})")

    async def stop(self) -> None:
        """
        Stop the connection loop and release keepalive/reconnect timers.

        Safe to call more than once.
        """
        if not self._running and self._task is None:
            return
        self._running = False

        self._cancel_keepalive()

        if self.ws is not None:
            try:
                await self.ws.close()
            except Exception as e:
                logger.warning(f"Error closing WebSocket: {e}")

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self.ws = None
        self.state = ConnectionState.DISCONNECTED
        logger.info("Price stream stopped")

    async def _run(self) -> None:
        """Connect, read until the connection drops, wait, repeat."""
        while self._running:
            try:
                await self._connect_and_run()
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as e:
                logger.warning(f"WebSocket connection closed: {e}")
            except asyncio.TimeoutError:
                logger.warning(f"WebSocket connect timed out after {self.connect_timeout}s")
            except InvalidHandshake as e:
                logger.error(f"WebSocket handshake rejected: {e}")
            except Exception as e:
                logger.error(f"WebSocket error: {e}", exc_info=True)
            finally:
                self._cancel_keepalive()
                self.ws = None
                self.state = ConnectionState.DISCONNECTED

            if self._running:
                logger.info(f"Reconnecting in {self.reconnect_delay}s...")
                await asyncio.sleep(self.reconnect_delay)

    async def _connect_and_run(self) -> None:
        """
        Connect, resubscribe, and process messages.

        Blocks until the connection closes or errors.
        """
        self.state = ConnectionState.CONNECTING
        logger.info(f"Connecting to {self.ws_url}")

        async with self._connect(
            self.ws_url,
            open_timeout=self.connect_timeout,
            ping_interval=None,  # the market channel expects text PINGs
        ) as ws:
            self.ws = ws
            self.state = ConnectionState.CONNECTED
            logger.info("WebSocket connected")

            self._keepalive_task = asyncio.create_task(self._keepalive(ws))
            await self._resubscribe()

            async for raw_message in ws:
                if not self._running:
                    break
                await self._handle_message(raw_message)

    def _cancel_keepalive(self) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None

    async def _keepalive(self, ws) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await ws.send("PING")
            except Exception as e:
                logger.debug(f"Keepalive send failed: {e}")
                return

    # --- subscriptions -------------------------------------------------------

    async def subscribe(self, token_ids: Iterable[str]) -> List[str]:
        """
        Track token ids; send a subscription for the new ones if connected.

        Returns:
            The ids that were not tracked before
        """
        new_ids = [t for t in dict.fromkeys(token_ids) if t and t not in self.subscriptions]
        if not new_ids:
            return []

        self.subscriptions.update(new_ids)
        logger.info(f"Tracking {len(new_ids)} new token(s), {len(self.subscriptions)} total")

        if self.is_connected:
            await self._send_subscription(new_ids)
        return new_ids

    async def _resubscribe(self) -> None:
        """Send the whole tracked set after (re)connecting."""
        if not self.subscriptions:
            return
        await self._send_subscription(sorted(self.subscriptions))
        logger.info(f"Resubscribed to {len(self.subscriptions)} tokens")

    async def _send_subscription(self, token_ids: List[str]) -> None:
        if self.ws is None:
            logger.warning("Cannot subscribe: WebSocket not connected")
            return
        message = {"assets_ids": list(token_ids), "type": "market"}
        try:
            await self.ws.send(json.dumps(message))
            logger.debug(f"Sent subscription for {len(token_ids)} tokens")
        except Exception as e:
            logger.error(f"Failed to send subscription: {e}")

    # --- messages ------------------------------------------------------------

    async def _handle_message(self, raw: Any) -> None:
        """Parse a frame, update snapshots and notify consumers."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if raw in ("PONG", "PING", ""):
            return

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.debug(f"Ignoring non-JSON message: {e}")
            return

        for snapshot in self.book.apply(data):
            await self._notify(snapshot)

    async def _notify(self, snapshot: PriceSnapshot) -> None:
        for channel in self.channels:
            channel.put(snapshot)

        for handler in self.handlers:
            try:
                await handler(snapshot)
            except Exception as e:
                logger.error(
                    f"Snapshot handler error for {snapshot.token_id[:16]}...: {e}",
                    exc_info=True
                )

    def get_status(self) -> dict:
        return {
            "state": self.state.value,
            "subscriptions": len(self.subscriptions),
            "snapshots": len(self.book.snapshots),
            "dropped_updates": sum(c.dropped for c in self.channels),
        }
