"""
Live trading engine for Polymarket up/down markets.

This module implements:
- WebSocket price stream with reconnection and resubscription
- Rate-limited, retried order execution against the CLOB
- Per-token entry/exit mutual exclusion and stop-loss exits
- A SQLite/SQLAlchemy trade ledger reconciled with exchange balances
"""

__version__ = "1.0.0"
