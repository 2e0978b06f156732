from datetime import date, datetime, timedelta

import pytest

from core.portfolio_state import (
    DecisionAction, DecisionSnapshot, MarketRegimeSnapshot, MarketSummary
)
from core.risk_gatekeeper import DecisionValidator, alignment_score, is_expired

NOW = datetime(2025, 11, 28, 12, 0, 0)


def decision(action="BUY", age_minutes=5, confidence=75, symbol="BTCUSDT"):
    return DecisionSnapshot(
        id=1,
        symbol=symbol,
        action=action,
        confidence=confidence,
        created_at=NOW - timedelta(minutes=age_minutes),
    )


def regime(name="neutral", confidence=0.5, volatility=0.015, anomaly=0.1):
    return MarketRegimeSnapshot(
        symbol="BTCUSDT",
        regime=name,
        regime_confidence=confidence,
        volatility_24h=volatility,
        anomaly_score=anomaly,
        timestamp=NOW,
    )


def summary(sentiment="neutral", health=70, trend=60, percentages=None):
    return MarketSummary(
        summary_date=date(2025, 11, 28),
        market_sentiment=sentiment,
        market_health_score=health,
        trend_strength=trend,
        regime_percentages=percentages or {},
    )


@pytest.fixture
def validator():
    return DecisionValidator()


class TestExpiry:
    def test_decision_older_than_thirty_minutes_is_expired(self, validator):
        res = validator.validate(decision(age_minutes=35), summary(), regime(anomaly=0.75), now=NOW)
        assert not res.valid
        assert res.status == "EXPIRED"

    def test_expiry_wins_over_regime_rejection(self, validator):
        # anomaly would reject, but expiry is checked first
        res = validator.validate(decision(age_minutes=35), None, regime(anomaly=0.9), now=NOW)
        assert res.status == "EXPIRED"

    def test_fresh_decision_is_not_expired(self):
        assert not is_expired(decision(age_minutes=29), NOW, 30)
        assert is_expired(decision(age_minutes=31), NOW, 30)


class TestSymbolRegime:
    def test_no_regime_data_is_valid(self, validator):
        res = validator.validate(decision(), None, None, now=NOW)
        assert res.valid
        assert res.risk_adjustment == 1.0
        assert "No regime data" in res.reason

    @pytest.mark.parametrize("action", ["BUY", "SELL", "HOLD"])
    def test_high_anomaly_rejects_any_action(self, validator, action):
        res = validator.validate(decision(action=action, confidence=99), None, regime(anomaly=0.75), now=NOW)
        assert not res.valid
        assert res.status == "REJECTED"
        assert "unstable" in res.reason

    def test_confident_bear_rejects_buy(self, validator):
        res = validator.validate(decision("BUY"), None, regime("bear", confidence=0.8), now=NOW)
        assert not res.valid
        assert "BEAR" in res.reason

    def test_confident_bear_allows_sell(self, validator):
        assert validator.validate(decision("SELL"), None, regime("bear", confidence=0.8), now=NOW).valid

    def test_confident_bull_rejects_sell(self, validator):
        res = validator.validate(decision("SELL"), None, regime("bull", confidence=0.75), now=NOW)
        assert not res.valid

    def test_confident_reversal_rejects_everything(self, validator):
        for action in ("BUY", "SELL"):
            assert not validator.validate(decision(action), None, regime("reversal", confidence=0.9), now=NOW).valid

    def test_low_confidence_conflict_passes(self, validator):
        assert validator.validate(decision("BUY"), None, regime("bear", confidence=0.7), now=NOW).valid

    def test_volatility_and_moderate_anomaly_only_warn(self, validator):
        res = validator.validate(decision(), None, regime(volatility=0.08, anomaly=0.65), now=NOW)
        assert res.valid


class TestMarketContext:
    def test_poor_market_health_rejects(self, validator):
        res = validator.validate(decision(), summary(health=25), None, now=NOW)
        assert not res.valid
        assert "market health" in res.reason

    def test_disagreeing_sentiment_without_bonus_passes_at_floor(self, validator):
        # 0.3 is not below the 0.3 floor
        res = validator.validate(decision("SELL"), summary("bullish"), None, now=NOW)
        assert res.valid

    def test_weak_trend_reduces_size(self, validator):
        res = validator.validate(decision(), summary(trend=35), None, now=NOW)
        assert res.valid
        assert res.risk_adjustment == pytest.approx(0.7)

    def test_volatile_market_caps_adjustment(self, validator):
        res = validator.validate(decision(), summary(trend=80, percentages={"volatile": 45}), None, now=NOW)
        assert res.risk_adjustment == pytest.approx(0.6)

    def test_symbol_regime_still_checked_after_market_context(self, validator):
        res = validator.validate(decision(), summary("bullish"), regime(anomaly=0.8), now=NOW)
        assert not res.valid
        assert res.status == "REJECTED"

    def test_strong_trend_keeps_full_size(self, validator):
        res = validator.validate(decision(), summary(trend=75), regime(), now=NOW)
        assert res.valid
        assert res.risk_adjustment == 1.0


class TestAlignmentScore:
    @pytest.mark.parametrize("sentiment,action,expected", [
        ("bullish", DecisionAction.BUY, 0.8),
        ("extremely_bullish", DecisionAction.SELL, 0.3),
        ("bearish", DecisionAction.SELL, 0.8),
        ("extremely_bearish", DecisionAction.BUY, 0.3),
        ("neutral", DecisionAction.BUY, 0.6),
        ("sideways", DecisionAction.BUY, 0.5),
    ])
    def test_base_scores(self, sentiment, action, expected):
        assert alignment_score(action, sentiment) == pytest.approx(expected)

    def test_dominant_regime_bonus_is_clamped(self):
        assert alignment_score(DecisionAction.BUY, "bullish", {"bull": 70}) == pytest.approx(1.0)
        assert alignment_score(DecisionAction.SELL, "neutral", {"bear": 65}) == pytest.approx(0.8)

    def test_bonus_only_for_matching_action(self):
        assert alignment_score(DecisionAction.SELL, "neutral", {"bull": 90}) == pytest.approx(0.6)
