"""
Trading configuration with risk modes.

A risk mode is a preset of entry/exit thresholds:
- normal       = enter at 95-98c, stop at 80c, last 5 minutes
- safe         = enter at 95-97c, stop at 90c, last 5 minutes
- super-risk   = enter at 70-95c, stop at 40c, last 15 minutes
- dynamic-risk = super-risk style, but the entry threshold rises by a fixed
                 step after each consecutive loss (capped)
"""

from dataclasses import asdict, dataclass, fields
from typing import Dict, List, Optional
import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

RISK_MODES: Dict[str, Dict[str, float]] = {
    "normal": {
        "entry_threshold": 0.95,
        "max_entry_price": 0.98,
        "stop_loss": 0.80,
        "max_spread": 0.03,
        "time_window_seconds": 300,
        "profit_target": 0.99,
    },
    "safe": {
        "entry_threshold": 0.95,
        "max_entry_price": 0.97,
        "stop_loss": 0.90,
        "max_spread": 0.03,
        "time_window_seconds": 300,
        "profit_target": 0.98,
    },
    "super-risk": {
        "entry_threshold": 0.70,
        "max_entry_price": 0.95,
        "stop_loss": 0.40,
        "max_spread": 0.05,
        "time_window_seconds": 900,
        "profit_target": 0.98,
    },
    "dynamic-risk": {
        "entry_threshold": 0.70,
        "max_entry_price": 0.95,
        "stop_loss": 0.40,
        "max_spread": 0.05,
        "time_window_seconds": 900,
        "profit_target": 0.98,
        "threshold_increment": 0.05,
        "max_threshold": 0.85,
        "max_drawdown_percent": 0.325,
    },
}


@dataclass
class TradingConfig:
    """Master configuration for the up/down trading engine."""

    # === RISK MODE ===
    mode: str = "normal"

    # === ENTRY / EXIT (prices in dollars, 0-1) ===
    entry_threshold: float = 0.95
    max_entry_price: float = 0.98
    stop_loss: float = 0.80
    max_spread: float = 0.03
    time_window_seconds: int = 300
    profit_target: float = 0.99
    place_profit_target: bool = False  # rest a limit sell at profit_target after entry

    # === DYNAMIC RISK ===
    threshold_increment: float = 0.05
    max_threshold: Optional[float] = None
    max_drawdown_percent: Optional[float] = None

    # === POSITION LIMITS ===
    max_positions: int = 1
    trade_amount_usd: Optional[float] = None  # None = use full balance
    min_trade_balance_usd: float = 1.0

    # === LOOP ===
    poll_interval_seconds: float = 10.0
    ws_price_max_age_seconds: float = 5.0
    reconcile_every_ticks: int = 6
    resolution_grace_seconds: float = 60.0

    # === ORDER EXECUTION ===
    sell_max_attempts: int = 3
    retry_min_wait_seconds: float = 0.5
    retry_max_wait_seconds: float = 4.0
    fill_timeout_seconds: float = 5.0
    fill_poll_interval_seconds: float = 0.5

    # === MARKET RULES ===
    rules_ttl_seconds: float = 300.0
    default_min_order_size: float = 5.0
    default_tick_size: float = 0.01

    # === PRICE STREAM ===
    reconnect_delay_seconds: float = 3.0
    keepalive_interval_seconds: float = 10.0
    connect_timeout_seconds: float = 10.0
    price_channel_size: int = 1000

    # === DERIVED PROPERTIES ===

    @property
    def is_dynamic(self) -> bool:
        return self.mode == "dynamic-risk"

    @property
    def base_threshold(self) -> float:
        """Dynamic mode starts from the configured entry threshold."""
        return self.entry_threshold

    def effective_entry_threshold(self, consecutive_losses: int = 0) -> float:
        """
        Entry threshold after the given number of consecutive losses.

        Only dynamic-risk mode adjusts it:
        base + losses * increment, capped at max_threshold.

        losses=0 -> 0.70, losses=1 -> 0.75, losses=5 -> 0.85 (cap)
        """
        if not self.is_dynamic or self.max_threshold is None:
            return self.entry_threshold
        bump = max(0, consecutive_losses) * self.threshold_increment
        ceiling = self.max_threshold - self.entry_threshold
        return round(self.entry_threshold + min(bump, ceiling), 6)

    @classmethod
    def for_mode(cls, mode: str, **overrides) -> 'TradingConfig':
        """
        Build a config from a risk mode preset.

        Args:
            mode: One of RISK_MODES
            overrides: Field values applied on top of the preset

        Raises:
            ValueError: Unknown mode
        """
        if mode not in RISK_MODES:
            raise ValueError(f"Unknown mode '{mode}', must be one of {sorted(RISK_MODES)}")
        values = dict(RISK_MODES[mode])
        values.update(overrides)
        return cls(mode=mode, **values)

    @classmethod
    def from_json(cls, path: Path) -> 'TradingConfig':
        """
        Load config from JSON file, merging with the mode preset and defaults.

        Args:
            path: Path to JSON config file

        Returns:
            TradingConfig with values from file + preset/defaults for missing keys
        """
        if not path.exists():
            logger.warning(f"Config file {path} not found, using defaults")
            return cls()

        with open(path) as f:
            data = json.load(f)

        # Filter out comments (keys starting with _) and unknown keys
        known = {f.name for f in fields(cls)}
        overrides = {}
        for key, value in data.items():
            if key.startswith('_'):
                continue
            if key not in known:
                logger.warning(f"Ignoring unknown config key '{key}'")
                continue
            overrides[key] = value

        mode = overrides.pop('mode', 'normal')
        return cls.for_mode(mode, **overrides)

    def to_json(self) -> dict:
        """
        Serialize config for logging.

        Returns:
            Dict with all config values including derived ones
        """
        data = asdict(self)
        data['effective_entry_threshold'] = self.effective_entry_threshold(0)
        return data

    def validate(self) -> List[str]:
        """
        Validate configuration values.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if self.mode not in RISK_MODES:
            errors.append(f"mode must be one of {sorted(RISK_MODES)}, got '{self.mode}'")

        for name in ('entry_threshold', 'max_entry_price', 'stop_loss', 'profit_target'):
            value = getattr(self, name)
            if not (0.01 <= value <= 0.99):
                errors.append(f"{name} must be in [0.01, 0.99], got {value}")

        if not (self.stop_loss < self.entry_threshold):
            errors.append(
                f"stop_loss ({self.stop_loss}) must be below entry_threshold ({self.entry_threshold})"
            )

        if not (self.entry_threshold <= self.max_entry_price):
            errors.append(
                f"entry_threshold ({self.entry_threshold}) must not exceed max_entry_price ({self.max_entry_price})"
            )

        if self.place_profit_target and not (self.max_entry_price < self.profit_target):
            errors.append(
                f"profit_target ({self.profit_target}) must be above max_entry_price ({self.max_entry_price})"
            )

        if not (0.0 <= self.max_spread <= 0.5):
            errors.append(f"max_spread must be in [0, 0.5], got {self.max_spread}")

        if self.time_window_seconds <= 0:
            errors.append(f"time_window_seconds must be positive, got {self.time_window_seconds}")

        if self.poll_interval_seconds < 1.0:
            errors.append(f"poll_interval_seconds must be at least 1, got {self.poll_interval_seconds}")

        if self.ws_price_max_age_seconds < 1.0:
            errors.append(f"ws_price_max_age_seconds must be at least 1, got {self.ws_price_max_age_seconds}")

        if self.max_positions < 1:
            errors.append(f"max_positions must be at least 1, got {self.max_positions}")

        if self.trade_amount_usd is not None and self.trade_amount_usd <= 0:
            errors.append(f"trade_amount_usd must be positive, got {self.trade_amount_usd}")

        if self.sell_max_attempts < 1:
            errors.append(f"sell_max_attempts must be at least 1, got {self.sell_max_attempts}")

        if self.fill_timeout_seconds <= 0:
            errors.append(f"fill_timeout_seconds must be positive, got {self.fill_timeout_seconds}")

        if self.default_tick_size <= 0 or self.default_tick_size >= 0.5:
            errors.append(f"default_tick_size must be in (0, 0.5), got {self.default_tick_size}")

        if self.is_dynamic:
            if self.max_threshold is None:
                errors.append("dynamic-risk mode requires max_threshold")
            elif not (self.base_threshold < self.max_threshold):
                errors.append(
                    f"base threshold ({self.base_threshold}) must be below max_threshold ({self.max_threshold})"
                )
            elif self.max_threshold > self.max_entry_price:
                errors.append(
                    f"max_threshold ({self.max_threshold}) must not exceed max_entry_price ({self.max_entry_price})"
                )
            if not (0.01 <= self.threshold_increment <= 0.2):
                errors.append(f"threshold_increment must be in [0.01, 0.2], got {self.threshold_increment}")

        return errors

    def __str__(self) -> str:
        """String representation showing key parameters."""
        return (
            f"TradingConfig(\n"
            f"  mode={self.mode}\n"
            f"  entry={self.entry_threshold:.2f}-{self.max_entry_price:.2f}\n"
            f"  stop_loss={self.stop_loss:.2f}\n"
            f"  max_spread={self.max_spread:.2f}\n"
            f"  window={self.time_window_seconds}s\n"
            f"  max_positions={self.max_positions}\n"
            f")"
        )
