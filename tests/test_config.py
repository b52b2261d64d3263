"""Tests for trading configuration, risk modes and settings."""

import json

import pytest
from pydantic import ValidationError

from live_trading.config import RISK_MODES, TradingConfig
from src.config.settings import Settings


class TestRiskModes:

    def test_defaults_are_normal_mode(self):
        config = TradingConfig()
        assert config.mode == "normal"
        assert config.entry_threshold == 0.95
        assert config.stop_loss == 0.80
        assert config.validate() == []

    @pytest.mark.parametrize("mode", sorted(RISK_MODES))
    def test_presets_validate(self, mode):
        assert TradingConfig.for_mode(mode).validate() == []

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            TradingConfig.for_mode("yolo")

    def test_overrides_apply_on_top_of_preset(self):
        config = TradingConfig.for_mode("safe", max_positions=3)
        assert config.stop_loss == 0.90
        assert config.max_positions == 3


class TestDynamicThreshold:

    def test_threshold_rises_per_loss_and_caps(self):
        config = TradingConfig.for_mode("dynamic-risk")
        assert config.effective_entry_threshold(0) == 0.70
        assert config.effective_entry_threshold(1) == 0.75
        assert config.effective_entry_threshold(2) == 0.80
        assert config.effective_entry_threshold(5) == 0.85

    def test_static_modes_ignore_losses(self):
        config = TradingConfig.for_mode("normal")
        assert config.effective_entry_threshold(4) == 0.95


class TestValidation:

    def test_stop_must_be_below_entry(self):
        errors = TradingConfig(stop_loss=0.96).validate()
        assert any("stop_loss" in e for e in errors)

    def test_entry_must_not_exceed_max_entry(self):
        errors = TradingConfig(entry_threshold=0.97, max_entry_price=0.96).validate()
        assert any("max_entry_price" in e for e in errors)

    def test_profit_target_checked_only_when_enabled(self):
        assert TradingConfig(profit_target=0.97).validate() == []
        errors = TradingConfig(profit_target=0.97, place_profit_target=True).validate()
        assert any("profit_target" in e for e in errors)

    def test_dynamic_needs_max_threshold(self):
        config = TradingConfig.for_mode("dynamic-risk", max_threshold=None)
        assert any("max_threshold" in e for e in config.validate())

    def test_out_of_range_values(self):
        errors = TradingConfig(max_spread=0.8, max_positions=0, poll_interval_seconds=0.1).validate()
        assert len(errors) == 3


class TestJsonLoading:

    def test_from_json(self, tmp_path):
        path = tmp_path / "trading.json"
        path.write_text(json.dumps({
            "_comment": "ignored",
            "mode": "super-risk",
            "max_positions": 2,
            "not_a_field": True,
        }))

        config = TradingConfig.from_json(path)

        assert config.mode == "super-risk"
        assert config.entry_threshold == 0.70
        assert config.max_positions == 2

    def test_missing_file_uses_defaults(self, tmp_path):
        config = TradingConfig.from_json(tmp_path / "missing.json")
        assert config == TradingConfig()

    def test_to_json(self):
        data = TradingConfig.for_mode("dynamic-risk").to_json()
        assert data["mode"] == "dynamic-risk"
        assert data["effective_entry_threshold"] == 0.70


class TestSettings:

    def test_overrides_and_normalization(self):
        settings = Settings(_env_file=None, log_level="debug", polymarket_private_key="0xabc")
        assert settings.log_level == "DEBUG"
        assert settings.has_trading_credentials

    def test_invalid_signature_type(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, polymarket_signature_type=3)

    def test_config_path(self, tmp_path):
        settings = Settings(_env_file=None, trading_config_path=str(tmp_path / "t.json"))
        assert settings.config_path == tmp_path / "t.json"
