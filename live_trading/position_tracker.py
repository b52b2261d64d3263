"""
Position tracking with limit enforcement.

Tracks open positions by token id and the realized P&L streak used by
dynamic-risk mode. Enforces the open position cap and the drawdown stop.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from live_trading.config import TradingConfig
from live_trading.db.models import Trade, TradeSide
from live_trading.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class Position:
    """Represents an open position."""

    trade_id: int
    token_id: str
    market_slug: str
    side: TradeSide
    shares: float
    entry_price: float
    opened_at: datetime
    market_end_date: Optional[datetime] = None

    # Shares bought at entry; 0 means "same as shares"
    entry_shares: float = 0.0

    # Partial stop-loss fills accumulate here until the exit completes
    exited_shares: float = 0.0
    exit_proceeds: float = 0.0
    profit_order_id: Optional[str] = None
    last_bid: Optional[float] = field(default=None, compare=False)

    # Remainder below the exchange minimum order size: held to resolution
    hold_to_resolution: bool = False

    def __post_init__(self):
        if not self.entry_shares:
            self.entry_shares = round(self.shares + self.exited_shares, 6)

    @property
    def total_shares(self) -> float:
        return self.entry_shares

    @property
    def recorded_shares(self) -> float:
        """Shares the ledger says are still held (upper bound for the local count)."""
        return max(0.0, round(self.entry_shares - self.exited_shares, 6))

    def record_partial_exit(self, shares: float, price: float) -> float:
        """
        Book a partial fill.

        Returns:
            Shares actually booked (capped at the local count)
        """
        sold = min(shares, self.shares)
        self.shares = round(self.shares - sold, 6)
        self.exited_shares = round(self.exited_shares + sold, 6)
        self.exit_proceeds += sold * price
        return sold

    def average_exit_price(self, final_shares: float, final_price: float) -> float:
        """Volume-weighted exit price over earlier partial fills plus the final fill."""
        total = self.exited_shares + final_shares
        if self.exited_shares <= 0 or total <= 0:
            return final_price
        return (self.exit_proceeds + final_shares * final_price) / total

    @classmethod
    def from_trade(cls, trade: Trade) -> "Position":
        return cls(
            trade_id=trade.id,
            token_id=trade.token_id,
            market_slug=trade.market_slug,
            side=trade.side,
            shares=trade.remaining_shares,
            entry_price=trade.entry_price,
            opened_at=trade.created_at,
            market_end_date=trade.market_end_date,
            entry_shares=trade.shares,
            exited_shares=trade.exited_shares,
            exit_proceeds=trade.exit_proceeds,
        )


class PositionTracker:
    """
    Tracks open positions and enforces limits.

    Limits enforced:
    - Max concurrent open positions
    - Max drawdown from the peak balance (dynamic-risk mode)

    One position per token id. Owned by the position manager.
    """

    def __init__(self, config: TradingConfig):
        """
        Initialize position tracker.

        Args:
            config: Trading configuration with limits
        """
        self.config = config

        self.positions: Dict[str, Position] = {}  # token_id → Position

        # P&L tracking
        self.total_pnl: float = 0.0
        self.consecutive_losses: int = 0
        self.peak_balance: Optional[float] = None
        self.last_balance: Optional[float] = None

    def load(self, trades: List[Trade]) -> int:
        """
        Rebuild the map from OPEN ledger trades.

        Returns:
            Number of positions loaded
        """
        self.positions.clear()
        for trade in trades:
            if not trade.is_open:
                continue
            if trade.token_id in self.positions:
                logger.warning(
                    f"Duplicate OPEN trade #{trade.id} for token {trade.token_id[:16]}..., "
                    f"keeping #{self.positions[trade.token_id].trade_id}"
                )
                continue
            self.positions[trade.token_id] = Position.from_trade(trade)

        if self.positions:
            logger.info(f"Loaded {len(self.positions)} open position(s) from ledger")
        return len(self.positions)

    def add_position(
        self,
        trade_id: int,
        token_id: str,
        market_slug: str,
        side: TradeSide,
        shares: float,
        entry_price: float,
        market_end_date: Optional[datetime] = None,
    ) -> Position:
        """Add a new position."""
        position = Position(
            trade_id=trade_id,
            token_id=token_id,
            market_slug=market_slug,
            side=TradeSide(side),
            shares=shares,
            entry_price=entry_price,
            opened_at=utc_now(),
            market_end_date=market_end_date,
        )
        self.positions[token_id] = position

        logger.info(
            f"Position added: {market_slug} {position.side.value} {shares} @ {entry_price} "
            f"(total positions: {len(self.positions)})"
        )
        return position

    def remove_position(self, token_id: str, pnl: float = 0.0) -> Optional[Position]:
        """
        Remove a closed position and record its realized P&L.

        Args:
            token_id: Token to remove
            pnl: Realized P&L in USD (positive = profit)
        """
        position = self.positions.pop(token_id, None)
        if position is None:
            logger.warning(f"Attempted to remove non-existent position: {token_id[:16]}...")
            return None

        self.total_pnl += pnl
        if pnl > 0:
            self.consecutive_losses = 0
        else:
            self.consecutive_losses += 1

        logger.info(
            f"Position removed: {position.market_slug} P&L=${pnl:+.2f} "
            f"(total P&L: ${self.total_pnl:+.2f}, loss streak: {self.consecutive_losses})"
        )
        return position

    def has_position(self, token_id: str) -> bool:
        return token_id in self.positions

    def get_position(self, token_id: str) -> Optional[Position]:
        return self.positions.get(token_id)

    def has_market(self, market_slug: str) -> bool:
        """True if either side of the market is held."""
        return any(p.market_slug == market_slug for p in self.positions.values())

    def get_position_count(self) -> int:
        return len(self.positions)

    def all_positions(self) -> List[Position]:
        """Snapshot list, safe to iterate while positions change."""
        return list(self.positions.values())

    def update_balance(self, balance: float) -> None:
        self.last_balance = balance
        if self.peak_balance is None or balance > self.peak_balance:
            self.peak_balance = balance

    @property
    def drawdown(self) -> float:
        """Fractional drop from the peak balance (0.25 = 25% below peak)."""
        if not self.peak_balance or self.last_balance is None:
            return 0.0
        return max(0.0, (self.peak_balance - self.last_balance) / self.peak_balance)

    def can_open_position(self) -> Tuple[bool, str]:
        """
        Check if a new position can be opened based on limits.

        Returns:
            (can_open, reason)
        """
        if self.get_position_count() >= self.config.max_positions:
            return False, f"Max positions reached ({self.config.max_positions})"

        max_drawdown = self.config.max_drawdown_percent
        if max_drawdown is not None and self.drawdown >= max_drawdown:
            return False, f"Max drawdown reached ({self.drawdown:.1%} >= {max_drawdown:.1%})"

        return True, "OK"

    def current_entry_threshold(self) -> float:
        return self.config.effective_entry_threshold(self.consecutive_losses)
