"""
Decision Validator (Regime Gatekeeper)
========================================
Gates an AI decision against market-regime context before any sizing happens.
Gates run in priority order and the first violation wins:
  1. Expiry          : decisions older than the expiry window are EXPIRED
  2. Market summary  : health floor, sentiment alignment, weak-trend / volatile
                       market size reductions (only when today's summary exists)
  3. Symbol regime   : anomaly veto, high-confidence regime conflicts
High volatility and moderate anomalies are WARNINGS only, never rejections.

The validator returns the risk adjustment it derived; the caller threads it
into the PositionSizer explicitly.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from core.portfolio_state import (
    DecisionAction, DecisionSnapshot, DecisionStatus, MarketRegimeSnapshot, MarketSummary
)
from core.trading_config import TradingConfig, get_config
from trading_interface.events.schemas import ValidationResult

logger = logging.getLogger("DecisionValidator")

BULLISH_SENTIMENTS = ("bullish", "extremely_bullish")
BEARISH_SENTIMENTS = ("bearish", "extremely_bearish")


class GateViolation(Exception):
    def __init__(self, metric: str, reason: str, status: DecisionStatus = DecisionStatus.REJECTED):
        self.metric = metric
        self.reason = reason
        self.status = status
        super().__init__(reason)


def alignment_score(action: DecisionAction, sentiment: str,
                    regime_percentages: Optional[Dict[str, float]] = None) -> float:
    """Agreement between the decision's action and the prevailing market sentiment, in [0, 1]."""
    pct = regime_percentages or {}
    bull_ratio = float(pct.get("bull", 0) or 0)
    bear_ratio = float(pct.get("bear", 0) or 0)

    alignment = 0.5
    if sentiment in BULLISH_SENTIMENTS:
        alignment = 0.8 if action == DecisionAction.BUY else 0.3
    elif sentiment in BEARISH_SENTIMENTS:
        alignment = 0.8 if action == DecisionAction.SELL else 0.3
    elif sentiment == "neutral":
        alignment = 0.6

    if bull_ratio > 60 and action == DecisionAction.BUY:
        alignment += 0.2
    if bear_ratio > 60 and action == DecisionAction.SELL:
        alignment += 0.2

    return min(1.0, max(0.0, alignment))


def is_expired(decision: DecisionSnapshot, now: Optional[datetime] = None,
               expiry_minutes: Optional[int] = None) -> bool:
    now = now or datetime.utcnow()
    expiry_minutes = expiry_minutes if expiry_minutes is not None else get_config().decision_expiry_minutes
    return now - decision.created_at > timedelta(minutes=expiry_minutes)


class DecisionValidator:
    """
    Deterministic, side-effect free gate. All thresholds come from TradingConfig.
    """

    def __init__(self, config: Optional[TradingConfig] = None):
        self.config = config or get_config()

    def validate(
        self,
        decision: DecisionSnapshot,
        summary:  Optional[MarketSummary],
        regime:   Optional[MarketRegimeSnapshot],
        now:      Optional[datetime] = None,
    ) -> ValidationResult:
        try:
            # ── Gate 1: Expiry ──────────────────────────────────────────────
            self._check_expiry(decision, now)

            # ── Gate 2: Market-wide context (primary) ───────────────────────
            risk_adjustment = 1.0
            if summary is not None:
                risk_adjustment = self._check_market_context(decision, summary)
            else:
                logger.debug("No market summary available - using symbol-specific regime")

            # ── Gate 3: Symbol regime (fallback / secondary) ────────────────
            reason = self._check_symbol_regime(decision, regime)

            if summary is not None:
                reason = f"Market validation passed: {summary.market_sentiment} regime; {reason}"

            return ValidationResult(valid=True, reason=reason, risk_adjustment=risk_adjustment)

        except GateViolation as v:
            logger.warning(f"DECISION GATE: [{v.metric}] {decision.symbol} {decision.action.value}: {v.reason}")
            return ValidationResult(
                valid=False,
                reason=v.reason,
                risk_adjustment=0.0,
                status=v.status.value,
            )

    # ── Gate implementations ────────────────────────────────────────────────

    def _check_expiry(self, decision: DecisionSnapshot, now: Optional[datetime]):
        if is_expired(decision, now, self.config.decision_expiry_minutes):
            raise GateViolation(
                "EXPIRED",
                f"Decision created at {decision.created_at.isoformat()} is older than "
                f"{self.config.decision_expiry_minutes} minutes",
                status=DecisionStatus.EXPIRED,
            )

    def _check_market_context(self, decision: DecisionSnapshot, summary: MarketSummary) -> float:
        logger.info(
            f"Market Summary: {summary.market_sentiment} "
            f"(Health: {summary.market_health_score}, Trend: {summary.trend_strength}%)"
        )

        if summary.market_health_score < self.config.min_market_health:
            raise GateViolation("MARKET_HEALTH", f"Poor market health: {summary.market_health_score}")

        score = alignment_score(decision.action, summary.market_sentiment, summary.regime_percentages)
        if score < self.config.min_alignment_score:
            raise GateViolation(
                "ALIGNMENT",
                f"Poor alignment with market regime: {summary.market_sentiment} (score {score:.2f})",
            )

        risk_adjustment = 1.0
        if summary.trend_strength < self.config.weak_trend_threshold:
            risk_adjustment = self.config.weak_trend_adjustment
            logger.info(f"Weak trend strength: {summary.trend_strength}% - reducing position size")

        if summary.regime_pct("volatile") > self.config.volatile_market_pct:
            logger.warning(f"High volatility market - extra caution for {decision.symbol}")
            risk_adjustment = min(risk_adjustment, self.config.volatile_market_adjustment)

        return risk_adjustment

    def _check_symbol_regime(self, decision: DecisionSnapshot,
                             regime: Optional[MarketRegimeSnapshot]) -> str:
        if regime is None:
            logger.warning(f"No regime data available for {decision.symbol} - proceeding with caution")
            return "No regime data available"

        action = decision.action
        logger.info(
            f"Symbol Regime for {decision.symbol}: {regime.regime} "
            f"({regime.regime_confidence * 100:.1f}%), Anomaly: {regime.anomaly_score}"
        )

        if regime.anomaly_score > self.config.anomaly_reject_score:
            raise GateViolation(
                "ANOMALY",
                f"High anomaly score detected: {regime.anomaly_score * 100:.1f}% - Market unstable",
            )

        if regime.regime_confidence > self.config.regime_conflict_confidence:
            conf = f"{regime.regime_confidence * 100:.1f}%"
            if regime.regime == "bull" and action == DecisionAction.SELL:
                raise GateViolation("REGIME_CONFLICT", f"High confidence BULL regime ({conf}) conflict with SELL decision")
            if regime.regime == "bear" and action == DecisionAction.BUY:
                raise GateViolation("REGIME_CONFLICT", f"High confidence BEAR regime ({conf}) conflict with BUY decision")
            if regime.regime == "reversal":
                raise GateViolation("REGIME_REVERSAL", "REVERSAL regime detected - Avoid trading during market transitions")

        # Soft warnings only, do NOT raise
        if regime.volatility_24h > 0.05:
            logger.warning(f"High volatility detected for {decision.symbol}: {regime.volatility_24h * 100:.2f}%")
        if regime.anomaly_score > 0.5:
            logger.warning(
                f"Moderate anomaly for {decision.symbol}: {regime.anomaly_score * 100:.1f}% "
                "- position size will be reduced"
            )

        return (
            f"Symbol regime passed - {regime.regime} regime, "
            f"{regime.regime_confidence * 100:.1f}% confidence"
        )
