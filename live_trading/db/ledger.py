"""
Trade ledger backed by SQLAlchemy.

Provides methods to:
- Record an entry (OPEN row)
- Record partial stop-loss fills on an open position
- Close a position exactly once (STOPPED / RESOLVED) with realized P&L
- Query open trades, history and aggregate stats
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from live_trading.db.models import Base, Trade, TradeRecord, TradeSide, TradeStatus
from live_trading.utils import utc_now
from src.db.connection import session_scope

logger = logging.getLogger(__name__)


def init_ledger_schema(engine: Engine) -> None:
    """Create the trades table if it doesn't exist."""
    Base.metadata.create_all(engine)
    logger.info("Ledger schema ready")


class TradeLedger:
    """
    Persistent record of positions.

    The position manager is the only writer.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create_trade(
        self,
        market_slug: str,
        token_id: str,
        side: Union[TradeSide, str],
        entry_price: float,
        shares: float,
        cost_basis: float,
        market_end_date: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> int:
        """
        Record a newly opened position.

        Returns:
            trade id
        """
        side = TradeSide(side)
        with session_scope(self.session_factory) as db:
            record = TradeRecord(
                market_slug=market_slug,
                token_id=token_id,
                side=side.value,
                entry_price=entry_price,
                shares=shares,
                cost_basis=cost_basis,
                status=TradeStatus.OPEN.value,
                created_at=created_at or utc_now(),
                market_end_date=market_end_date,
            )
            db.add(record)
            db.flush()
            trade_id = record.id

        logger.info(
            f"Opened trade #{trade_id}: {side.value} {shares} @ {entry_price} "
            f"on {market_slug} (cost ${cost_basis:.2f})"
        )
        return trade_id

    def close_trade(
        self,
        trade_id: int,
        exit_price: float,
        status: Union[TradeStatus, str],
        shares: Optional[float] = None,
        closed_at: Optional[datetime] = None,
    ) -> Optional[Trade]:
        """
        Close an OPEN trade and compute pnl = (exit - entry) * shares.

        Runs as one conditional UPDATE, so a trade can only be closed once.

        Args:
            trade_id: Trade to close
            exit_price: Realized exit price (1.0 / 0.0 for resolution)
            status: STOPPED or RESOLVED
            shares: Final share count, when it differs from the entry
            closed_at: Close timestamp (default now)

        Returns:
            The closed trade, or None if it was not OPEN

        Raises:
            ValueError: status is not terminal
        """
        status = TradeStatus(status)
        if status == TradeStatus.OPEN:
            raise ValueError("close_trade requires a terminal status (STOPPED or RESOLVED)")

        values = {
            "status": status.value,
            "exit_price": exit_price,
            "closed_at": closed_at or utc_now(),
        }
        if shares is not None:
            values["shares"] = shares
            values["pnl"] = (exit_price - TradeRecord.entry_price) * shares
        else:
            values["pnl"] = (exit_price - TradeRecord.entry_price) * TradeRecord.shares

        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(TradeRecord)
                .where(TradeRecord.id == trade_id, TradeRecord.status == TradeStatus.OPEN.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning(f"Trade #{trade_id} not closed: not found or already closed")
                return None
            trade = db.get(TradeRecord, trade_id).to_trade()

        logger.info(
            f"Closed trade #{trade_id} as {status.value} @ {exit_price} "
            f"(pnl ${trade.pnl:+.2f})"
        )
        return trade

    def record_partial_exit(self, trade_id: int, shares: float, price: float) -> bool:
        """
        Add a partial stop-loss fill to an OPEN trade.

        The trade stays OPEN; close_trade later folds these fills into the
        exit price.

        Returns:
            True if the trade was OPEN and updated
        """
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(TradeRecord)
                .where(TradeRecord.id == trade_id, TradeRecord.status == TradeStatus.OPEN.value)
                .values(
                    exited_shares=TradeRecord.exited_shares + shares,
                    exit_proceeds=TradeRecord.exit_proceeds + shares * price,
                )
                .execution_options(synchronize_session=False)
            )
            updated = result.rowcount == 1

        if updated:
            logger.info(f"Trade #{trade_id}: partial exit {shares} @ {price}")
        else:
            logger.warning(f"Trade #{trade_id} partial exit not recorded: not found or already closed")
        return updated

    def get_trade(self, trade_id: int) -> Optional[Trade]:
        with session_scope(self.session_factory) as db:
            record = db.get(TradeRecord, trade_id)
            return record.to_trade() if record else None

    def get_open_trades(self) -> List[Trade]:
        """OPEN trades, newest first."""
        with session_scope(self.session_factory) as db:
            rows = db.scalars(
                select(TradeRecord)
                .where(TradeRecord.status == TradeStatus.OPEN.value)
                .order_by(TradeRecord.created_at.desc(), TradeRecord.id.desc())
            ).all()
            return [row.to_trade() for row in rows]

    def get_recent_trades(self, limit: int = 10) -> List[Trade]:
        with session_scope(self.session_factory) as db:
            rows = db.scalars(
                select(TradeRecord)
                .order_by(TradeRecord.created_at.desc(), TradeRecord.id.desc())
                .limit(limit)
            ).all()
            return [row.to_trade() for row in rows]

    def get_last_closed_trade(self) -> Optional[Trade]:
        with session_scope(self.session_factory) as db:
            row = db.scalars(
                select(TradeRecord)
                .where(TradeRecord.status != TradeStatus.OPEN.value)
                .order_by(TradeRecord.closed_at.desc(), TradeRecord.id.desc())
                .limit(1)
            ).first()
            return row.to_trade() if row else None

    def get_total_pnl(self) -> float:
        """Sum of realized P&L over closed trades."""
        with session_scope(self.session_factory) as db:
            total = db.scalar(
                select(func.coalesce(func.sum(TradeRecord.pnl), 0.0))
                .where(TradeRecord.status != TradeStatus.OPEN.value)
            )
            return float(total or 0.0)

    def get_trade_stats(self) -> Dict[str, float]:
        """
        Aggregate counts.

        Returns:
            Dict with total, wins, losses, open and win_rate (percent of closed)
        """
        with session_scope(self.session_factory) as db:
            rows = db.execute(select(TradeRecord.status, TradeRecord.pnl)).all()

        total = len(rows)
        open_count = sum(1 for status, _ in rows if status == TradeStatus.OPEN.value)
        closed = [pnl or 0.0 for status, pnl in rows if status != TradeStatus.OPEN.value]
        wins = sum(1 for pnl in closed if pnl > 0)
        losses = len(closed) - wins

        return {
            "total": total,
            "wins": wins,
            "losses": losses,
            "open": open_count,
            "win_rate": (wins / len(closed) * 100) if closed else 0.0,
        }

    def get_consecutive_losses(self) -> int:
        """Losing closes since the most recent winning close."""
        with session_scope(self.session_factory) as db:
            pnls = db.scalars(
                select(TradeRecord.pnl)
                .where(TradeRecord.status != TradeStatus.OPEN.value)
                .order_by(TradeRecord.closed_at.desc(), TradeRecord.id.desc())
            ).all()

        streak = 0
        for pnl in pnls:
            if (pnl or 0.0) > 0:
                break
            streak += 1
        return streak
