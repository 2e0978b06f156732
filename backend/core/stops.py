"""Volatility / regime driven stop-loss and take-profit levels."""
import logging
from typing import Optional, Tuple

from core.portfolio_state import MarketRegimeSnapshot, PositionType

logger = logging.getLogger("StopCalculator")

SL_MIN, SL_MAX = 0.01, 0.10
TP_MIN, TP_MAX = 0.02, 0.20
VOLATILITY_SL_FACTOR = 1.5
REWARD_RISK_RATIO = 2.0

# Conservative fixed bands when no regime data exists: (sl, tp) multipliers of entry
FALLBACK_BANDS = {
    PositionType.LONG:  (0.97, 1.06),
    PositionType.SHORT: (1.03, 0.94),
}


def stop_regime_multiplier(regime: str, position_type: PositionType) -> float:
    """Tighter stops with the trend, wider against it, widest in reversals."""
    if regime == "bull":
        return 0.8 if position_type == PositionType.LONG else 1.2
    if regime == "bear":
        return 0.8 if position_type == PositionType.SHORT else 1.2
    if regime == "reversal":
        return 1.3
    return 1.0


def stop_distances(volatility_24h: float, regime: str, position_type: PositionType) -> Tuple[float, float]:
    """Returns (sl_distance, tp_distance) as fractions of entry, both bounded."""
    sl = volatility_24h * VOLATILITY_SL_FACTOR * stop_regime_multiplier(regime, position_type)
    tp = sl * REWARD_RISK_RATIO
    return max(SL_MIN, min(SL_MAX, sl)), max(TP_MIN, min(TP_MAX, tp))


def calculate_dynamic_sltp(
    entry_price: float,
    position_type: PositionType,
    regime: Optional[MarketRegimeSnapshot],
) -> Tuple[float, float]:
    """Returns (stop_loss, take_profit) rounded to 4 decimals."""
    if regime is None:
        sl_mult, tp_mult = FALLBACK_BANDS[position_type]
        logger.warning("No regime data for SL/TP calculation - using conservative defaults")
        return round(entry_price * sl_mult, 4), round(entry_price * tp_mult, 4)

    sl_distance, tp_distance = stop_distances(regime.volatility_24h, regime.regime, position_type)

    if position_type == PositionType.LONG:
        stop_loss = entry_price * (1 - sl_distance)
        take_profit = entry_price * (1 + tp_distance)
    else:
        stop_loss = entry_price * (1 + sl_distance)
        take_profit = entry_price * (1 - tp_distance)

    logger.info(
        f"Dynamic SL/TP for {regime.symbol} {position_type.value} @ {entry_price}: "
        f"vol={regime.volatility_24h * 100:.2f}% sl={sl_distance * 100:.2f}% tp={tp_distance * 100:.2f}% "
        f"-> SL {stop_loss:.4f} / TP {take_profit:.4f}"
    )
    return round(stop_loss, 4), round(take_profit, 4)
