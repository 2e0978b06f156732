"""
Position Sizer
================
Turns a validated decision into a notional risk amount.

    risk_amount = base_amount × clamp(Π multipliers, 0.1, 2.0) × market_adjustment

where base_amount is risk_value% of the portfolio's available balance and the
market adjustment is the value returned by the DecisionValidator. Each
multiplier is an ordered (threshold, multiplier) table evaluated by a pure
function so every table can be tested on its own.
"""
import logging
from typing import Optional, Sequence, Tuple

from core.portfolio_state import MarketRegimeSnapshot, PortfolioState
from trading_interface.events.schemas import SizingResult

logger = logging.getLogger("PositionSizer")

MIN_MULTIPLIER = 0.1
MAX_MULTIPLIER = 2.0

REGIME_MULTIPLIERS = {
    "bull":     1.2,
    "bear":     0.8,
    "neutral":  1.0,
    "reversal": 0.5,
}

# (exclusive lower bound, multiplier), first match wins, else the default
REGIME_CONFIDENCE_TABLE: Sequence[Tuple[float, float]] = ((0.8, 1.1), (0.6, 1.0), (0.4, 0.9))
VOLATILITY_TABLE: Sequence[Tuple[float, float]] = (
    (0.05, 0.6), (0.03, 0.8), (0.02, 0.9), (0.01, 1.0), (0.005, 1.1),
)
ANOMALY_TABLE: Sequence[Tuple[float, float]] = ((0.7, 0.0), (0.5, 0.5), (0.3, 0.8))

# (inclusive lower bound, multiplier)
AI_CONFIDENCE_TABLE: Sequence[Tuple[float, float]] = ((80, 1.2), (70, 1.1), (60, 1.0), (50, 0.9))


def _above(value: float, table: Sequence[Tuple[float, float]], default: float) -> float:
    for threshold, multiplier in table:
        if value > threshold:
            return multiplier
    return default


def _at_least(value: float, table: Sequence[Tuple[float, float]], default: float) -> float:
    for threshold, multiplier in table:
        if value >= threshold:
            return multiplier
    return default


def regime_multiplier(regime: str) -> float:
    return REGIME_MULTIPLIERS.get(regime, 1.0)


def regime_confidence_multiplier(confidence: float) -> float:
    return _above(confidence, REGIME_CONFIDENCE_TABLE, 0.8)


def volatility_multiplier(volatility_24h: float) -> float:
    return _above(volatility_24h, VOLATILITY_TABLE, 1.2)


def anomaly_multiplier(anomaly_score: float) -> float:
    # > 0.7 should already have been rejected by the validator
    return _above(anomaly_score, ANOMALY_TABLE, 1.0)


def ai_confidence_multiplier(confidence: float) -> float:
    return _at_least(confidence, AI_CONFIDENCE_TABLE, 0.8)


def clamp_multiplier(value: float) -> float:
    return max(MIN_MULTIPLIER, min(MAX_MULTIPLIER, value))


class PositionSizer:

    def size(
        self,
        portfolio:                PortfolioState,
        confidence:               float,
        symbol:                   str,
        decision_risk_adjustment: float = 1.0,
        regime:                   Optional[MarketRegimeSnapshot] = None,
    ) -> SizingResult:
        base_amount = portfolio.base_risk_amount

        if regime is None:
            logger.warning(f"No regime data for {symbol} - using base risk amount")
            return SizingResult(
                base_amount=base_amount,
                multiplier=1.0,
                market_adjustment=decision_risk_adjustment,
                risk_amount=base_amount * decision_risk_adjustment,
            )

        breakdown = {
            "regime":        regime_multiplier(regime.regime),
            "confidence":    regime_confidence_multiplier(regime.regime_confidence),
            "volatility":    volatility_multiplier(regime.volatility_24h),
            "anomaly":       anomaly_multiplier(regime.anomaly_score),
            "ai_confidence": ai_confidence_multiplier(confidence),
        }

        product = 1.0
        for factor in breakdown.values():
            product *= factor
        multiplier = clamp_multiplier(product)
        risk_amount = base_amount * multiplier * decision_risk_adjustment

        logger.info(
            f"Position sizing for {symbol}: base=${base_amount:.2f} x{multiplier:.3f} "
            f"x market {decision_risk_adjustment} = ${risk_amount:.2f} | {breakdown}"
        )

        return SizingResult(
            base_amount=base_amount,
            multiplier=multiplier,
            market_adjustment=decision_risk_adjustment,
            risk_amount=risk_amount,
            breakdown=breakdown,
        )
