"""
Trading engine: builds, owns and runs every component.

Coordinates:
- Polymarket CLOB client (shared rate limiter)
- Market rules cache and order executor
- Price stream for real-time order book data
- Trade ledger (SQLAlchemy)
- Position manager (trading loop)

There are no module-level singletons; everything hangs off one
TradingEngine instance.
"""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from sqlalchemy.orm import sessionmaker

from live_trading.config import TradingConfig
from live_trading.db.ledger import TradeLedger, init_ledger_schema
from live_trading.market_data import MarketDiscovery
from live_trading.market_rules import MarketRulesCache
from live_trading.order_executor import OrderExecutor
from live_trading.position_manager import PositionManager
from live_trading.websocket.handler import PriceStream
from src.config.settings import Settings
from src.db.connection import create_db_engine, get_session_factory
from src.polymarket.client import ExchangeClient, PolymarketClient
from src.polymarket.errors import ExchangeError
from src.utils.rate_limiter import get_clob_rate_limiter

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Log to stderr, and to log_file when given."""
    handlers = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


class TradingEngine:
    """
    Main trading daemon.

    Lifecycle: init() -> start() -> ... -> shutdown(). run() does all of it
    and waits for a shutdown request (SIGINT/SIGTERM or request_shutdown()).
    """

    def __init__(
        self,
        config: TradingConfig,
        settings: Settings,
        discovery: MarketDiscovery,
        client: Optional[ExchangeClient] = None,
        price_stream: Optional[PriceStream] = None,
        session_factory: Optional[sessionmaker] = None,
    ):
        """
        Initialize the engine and all components.

        Args:
            config: Trading configuration (validated by the caller)
            settings: Environment settings (credentials, URLs, database)
            discovery: Source of tradable markets
            client: Exchange client (built from settings if None)
            price_stream: Price stream (built from settings if None)
            session_factory: Ledger session factory (built from settings if None)
        """
        self.config = config
        self.settings = settings

        if client is None:
            client = PolymarketClient(
                private_key=settings.polymarket_private_key,
                host=settings.polymarket_clob_host,
                chain_id=settings.polymarket_chain_id,
                signature_type=settings.polymarket_signature_type,
                funder=settings.polymarket_funder_address,
                rate_limiter=get_clob_rate_limiter(settings.clob_max_rate, settings.clob_burst),
                acquire_timeout=settings.clob_acquire_timeout,
            )
        self.client = client

        if session_factory is None:
            db_engine = create_db_engine(settings.database_url, echo=settings.log_level == "DEBUG")
            init_ledger_schema(db_engine)
            session_factory = get_session_factory(db_engine)
        self.ledger = TradeLedger(session_factory)

        self.rules_cache = MarketRulesCache(
            client,
            ttl_seconds=config.rules_ttl_seconds,
            default_min_order_size=config.default_min_order_size,
            default_tick_size=config.default_tick_size,
        )
        self.executor = OrderExecutor.from_config(client, self.rules_cache, config)

        self.price_stream = price_stream or PriceStream(
            ws_url=settings.polymarket_ws_url,
            reconnect_delay=config.reconnect_delay_seconds,
            keepalive_interval=config.keepalive_interval_seconds,
            connect_timeout=config.connect_timeout_seconds,
        )

        self.manager = PositionManager(
            executor=self.executor,
            ledger=self.ledger,
            discovery=discovery,
            config=config,
            price_stream=self.price_stream,
        )

        self._shutdown_event: Optional[asyncio.Event] = None
        self._initialized = False
        self._stopped = False

        logger.info(f"TradingEngine initialized ({config.mode} mode)")

    @property
    def init_error(self) -> Optional[str]:
        return self.manager.init_error

    async def init(self) -> None:
        """
        Load open positions, authenticate, start the price stream.

        Credential failures disable trading but leave the stream running
        so markets can still be watched.
        """
        if self._initialized:
            return
        self._initialized = True

        loaded = self.manager.load_open_positions()
        logger.info(f"Restored {loaded} open position(s)")

        connect = getattr(self.client, "connect", None)
        if connect is not None:
            try:
                await connect()
            except ExchangeError as e:
                self.manager.disable_trading(str(e))

        await self.price_stream.start()

    async def start(self) -> None:
        await self.init()
        await self.manager.start()

    async def shutdown(self) -> None:
        """Stop the trading loop and the stream. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Shutting down...")

        await self.manager.stop()
        await self.price_stream.stop()

        logger.info("Shutdown complete")

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def run(self) -> None:
        """
        Main entry: start everything and block until shutdown is requested.

        Steps:
        1. Restore positions, authenticate, connect the stream
        2. Start the trading loop
        3. Wait for SIGINT/SIGTERM or request_shutdown()
        4. Graceful shutdown
        """
        self._shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_shutdown)
                installed.append(signum)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not available on this platform / thread
                pass

        try:
            await self.start()
            await self._shutdown_event.wait()
            logger.info("Shutdown requested")
        except Exception as e:
            logger.error(f"Fatal error in main loop: {e}", exc_info=True)
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)
            await self.shutdown()

    def get_status(self) -> dict:
        status = self.manager.get_status()
        status["mode"] = self.config.mode
        status["total_pnl"] = self.ledger.get_total_pnl()
        status["trade_stats"] = self.ledger.get_trade_stats()
        return status

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        discovery: MarketDiscovery,
        config: Optional[TradingConfig] = None,
    ) -> "TradingEngine":
        """
        Build an engine from settings, loading the trading config file if set.

        Raises:
            ValueError: Config fails validation
        """
        if config is None:
            path = settings.config_path
            config = TradingConfig.from_json(path) if path else TradingConfig()

        errors = config.validate()
        if errors:
            for error in errors:
                logger.error(f"  - {error}")
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

        logger.info(f"Configuration:\n{config}")
        return cls(config, settings, discovery)
