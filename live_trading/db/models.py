"""
SQLAlchemy models for the trade ledger.

One row per position: created OPEN on entry, closed exactly once as
STOPPED (stop-loss exit) or RESOLVED (market settled).
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, CheckConstraint, Index
)
from sqlalchemy.orm import declarative_base

from live_trading.utils import ensure_utc

Base = declarative_base()


class TradeStatus(str, Enum):
    OPEN = "OPEN"
    STOPPED = "STOPPED"
    RESOLVED = "RESOLVED"


class TradeSide(str, Enum):
    UP = "UP"
    DOWN = "DOWN"


class TradeRecord(Base):
    """
    Ledger row for one position.

    exit_price, pnl, closed_at and the terminal status are written together
    by TradeLedger.close_trade and never change afterwards.
    exited_shares and exit_proceeds accumulate partial exits while OPEN.
    """
    __tablename__ = "trades"
    __table_args__ = (
        CheckConstraint("side IN ('UP', 'DOWN')", name="ck_trades_side"),
        CheckConstraint("status IN ('OPEN', 'STOPPED', 'RESOLVED')", name="ck_trades_status"),
        Index("idx_trades_status", "status", "created_at"),
        Index("idx_trades_token", "token_id"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    market_slug: str = Column(String(200), nullable=False)
    token_id: str = Column(String(100), nullable=False)
    side: str = Column(String(4), nullable=False, doc="UP | DOWN")
    entry_price: float = Column(Float, nullable=False)
    shares: float = Column(Float, nullable=False)
    cost_basis: float = Column(Float, nullable=False)
    exited_shares: float = Column(Float, nullable=False, default=0.0, server_default="0", doc="Shares sold by partial exits")
    exit_proceeds: float = Column(Float, nullable=False, default=0.0, server_default="0")
    status: str = Column(
        String(10),
        nullable=False,
        default=TradeStatus.OPEN.value,
        server_default=TradeStatus.OPEN.value,
        doc="OPEN | STOPPED | RESOLVED"
    )
    exit_price: Optional[float] = Column(Float, nullable=True)
    pnl: Optional[float] = Column(Float, nullable=True)
    created_at: datetime = Column(DateTime(timezone=True), nullable=False)
    closed_at: Optional[datetime] = Column(DateTime(timezone=True), nullable=True)
    market_end_date: Optional[datetime] = Column(DateTime(timezone=True), nullable=True)

    def to_trade(self) -> "Trade":
        return Trade(
            id=self.id,
            market_slug=self.market_slug,
            token_id=self.token_id,
            side=TradeSide(self.side),
            entry_price=self.entry_price,
            shares=self.shares,
            cost_basis=self.cost_basis,
            exited_shares=self.exited_shares or 0.0,
            exit_proceeds=self.exit_proceeds or 0.0,
            status=TradeStatus(self.status),
            exit_price=self.exit_price,
            pnl=self.pnl,
            created_at=ensure_utc(self.created_at),
            closed_at=ensure_utc(self.closed_at),
            market_end_date=ensure_utc(self.market_end_date),
        )


@dataclass(frozen=True)
class Trade:
    """Detached, read-only view of a ledger row."""

    id: int
    market_slug: str
    token_id: str
    side: TradeSide
    entry_price: float
    shares: float
    cost_basis: float
    status: TradeStatus
    exit_price: Optional[float]
    pnl: Optional[float]
    created_at: datetime
    closed_at: Optional[datetime]
    market_end_date: Optional[datetime]
    exited_shares: float = 0.0
    exit_proceeds: float = 0.0

    @property
    def remaining_shares(self) -> float:
        """Shares still held according to the ledger."""
        return max(0.0, round(self.shares - self.exited_shares, 6))

    @property
    def is_open(self) -> bool:
        return self.status == TradeStatus.OPEN
