"""Tests for market parsing and entry/exit rules."""

from datetime import datetime, timedelta, timezone

import pytest

from live_trading.db.models import TradeSide
from live_trading.market_data import (
    Market,
    Quote,
    analyze_market,
    is_entry_price_ok,
    is_in_entry_window,
    is_spread_acceptable,
    should_stop_loss,
)
from live_trading.utils import format_price, format_time_remaining, parse_end_date, seconds_until

NOW = datetime(2025, 1, 15, 17, 12, 0, tzinfo=timezone.utc)


def market(seconds_left=120, outcomes='["Up", "Down"]'):
    return Market.model_validate({
        "slug": "btc-updown-15m-1736961300",
        "question": "Bitcoin Up or Down - January 15, 12:00PM-12:15PM ET",
        "endDate": (NOW + timedelta(seconds=seconds_left)).isoformat().replace("+00:00", "Z"),
        "outcomes": outcomes,
        "outcomePrices": '["0.965", "0.035"]',
        "clobTokenIds": '["111", "222"]',
        "volume": "12345.6",
    })


class TestRules:

    def test_spread_boundary(self):
        assert is_spread_acceptable(0.77, 0.80, 0.03)
        assert not is_spread_acceptable(0.76, 0.80, 0.03)

    def test_stop_loss_inclusive(self):
        assert should_stop_loss(0.80, 0.80)
        assert should_stop_loss(0.70, 0.80)
        assert not should_stop_loss(0.81, 0.80)

    def test_entry_price_range_inclusive(self):
        assert is_entry_price_ok(0.95, 0.95, 0.98)
        assert is_entry_price_ok(0.98, 0.95, 0.98)
        assert not is_entry_price_ok(0.94, 0.95, 0.98)
        assert not is_entry_price_ok(0.99, 0.95, 0.98)

    def test_entry_window(self):
        assert is_in_entry_window(300, 300)
        assert is_in_entry_window(1, 300)
        assert not is_in_entry_window(301, 300)
        assert not is_in_entry_window(0, 300)


class TestMarket:
    """Test Market parsing of Gamma payloads."""

    def test_parses_json_string_fields(self):
        m = market()
        assert m.token_ids == ["111", "222"]
        assert m.outcomes == ["Up", "Down"]
        assert m.outcome_prices == [0.965, 0.035]
        assert m.end_date.tzinfo is not None

    def test_token_for_side(self):
        m = market(outcomes='["Down", "Up"]')
        assert m.up_token_id == "222"
        assert m.down_token_id == "111"

    def test_yes_no_outcomes(self):
        m = market(outcomes='["Yes", "No"]')
        assert m.token_for(TradeSide.UP) == "111"
        assert m.token_for(TradeSide.DOWN) == "222"

    def test_invalid_end_date(self):
        with pytest.raises(ValueError):
            Market.model_validate({"slug": "x", "endDate": "soon", "clobTokenIds": "[]"})


class TestAnalyzeMarket:

    def analyze(self, m, quotes):
        return analyze_market(
            m,
            {q.token_id: q for q in quotes},
            entry_threshold=0.95,
            max_entry_price=0.98,
            max_spread=0.03,
            time_window_seconds=300,
            now=NOW,
        )

    def test_eligible_side(self):
        analysis = self.analyze(market(), [Quote("111", 0.95, 0.96), Quote("222", 0.03, 0.05)])
        assert analysis.is_eligible
        assert analysis.signal.side == TradeSide.UP
        assert analysis.signal.token_id == "111"
        assert analysis.signal.ask == 0.96
        assert analysis.time_remaining == 120

    def test_wide_spread_rejected(self):
        analysis = self.analyze(market(), [Quote("111", 0.90, 0.96)])
        assert not analysis.is_eligible
        assert "spread" in analysis.reason

    def test_outside_window(self):
        analysis = self.analyze(market(seconds_left=600), [Quote("111", 0.95, 0.96)])
        assert not analysis.is_eligible
        assert "outside window" in analysis.reason

    def test_ended_market(self):
        analysis = self.analyze(market(seconds_left=-5), [Quote("111", 0.95, 0.96)])
        assert not analysis.is_eligible

    def test_missing_quotes(self):
        analysis = self.analyze(market(), [])
        assert not analysis.is_eligible
        assert "no quote" in analysis.reason


class TestUtils:

    def test_format_time_remaining(self):
        assert format_time_remaining(125) == "2m 5s"
        assert format_time_remaining(45) == "45s"
        assert format_time_remaining(-3) == "ENDED"

    def test_parse_end_date(self):
        parsed = parse_end_date("2025-01-15T17:15:00Z")
        assert parsed == datetime(2025, 1, 15, 17, 15, tzinfo=timezone.utc)
        assert parse_end_date("") is None
        assert parse_end_date("not a date") is None

    def test_seconds_until(self):
        assert seconds_until(NOW + timedelta(seconds=90), NOW) == 90
        assert seconds_until(None, NOW) == float("-inf")

    def test_format_price(self):
        assert format_price(0.955) == "95.5c"
        assert format_price(None) == "-"
