from datetime import datetime

import pytest

from core.portfolio_state import MarketRegimeSnapshot, PositionType
from core.stops import calculate_dynamic_sltp, stop_distances


def regime(name="neutral", volatility=0.02):
    return MarketRegimeSnapshot(symbol="BTCUSDT", regime=name, regime_confidence=0.6,
                                volatility_24h=volatility, anomaly_score=0.0, timestamp=datetime.utcnow())


class TestDynamicStops:
    def test_neutral_long(self):
        assert calculate_dynamic_sltp(100.0, PositionType.LONG, regime()) == (97.0, 106.0)

    def test_neutral_short_is_mirrored(self):
        assert calculate_dynamic_sltp(100.0, PositionType.SHORT, regime()) == (103.0, 94.0)

    def test_no_regime_uses_fixed_bands(self):
        assert calculate_dynamic_sltp(200.0, PositionType.LONG, None) == (194.0, 212.0)
        assert calculate_dynamic_sltp(200.0, PositionType.SHORT, None) == (206.0, 188.0)

    def test_bull_tightens_long_and_widens_short(self):
        long_sl, _ = stop_distances(0.02, "bull", PositionType.LONG)
        short_sl, _ = stop_distances(0.02, "bull", PositionType.SHORT)
        assert long_sl == pytest.approx(0.024)
        assert short_sl == pytest.approx(0.036)

    def test_distances_are_bounded(self):
        assert stop_distances(0.001, "neutral", PositionType.LONG) == (0.01, 0.02)
        assert stop_distances(0.5, "reversal", PositionType.SHORT) == (0.10, 0.20)

    def test_take_profit_is_twice_stop_inside_bounds(self):
        for vol in (0.008, 0.02, 0.04):
            sl, tp = stop_distances(vol, "neutral", PositionType.LONG)
            assert 0.01 <= sl <= 0.10
            assert 0.02 <= tp <= 0.20
            assert tp == pytest.approx(sl * 2)

    def test_rounded_to_four_decimals(self):
        sl, tp = calculate_dynamic_sltp(123.456789, PositionType.LONG, regime(volatility=0.0137))
        assert sl == round(sl, 4)
        assert tp == round(tp, 4)
