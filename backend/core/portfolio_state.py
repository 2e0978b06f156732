from datetime import date, datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class PositionType(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> "PositionType":
        return PositionType.SHORT if self is PositionType.LONG else PositionType.LONG


class DecisionAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class DecisionStatus(str, Enum):
    PENDING = "PENDING"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    EXECUTED = "EXECUTED"


class RiskMode(str, Enum):
    CONSERVATIVE = "CONSERVATIVE"
    MODERATE = "MODERATE"
    AGGRESSIVE = "AGGRESSIVE"


class DecisionSnapshot(BaseModel):
    """Immutable view of an AI decision handed to the validator."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    symbol: str
    action: DecisionAction
    confidence: float = Field(ge=0, le=100)
    price: Optional[float] = None
    explanation: Optional[str] = ""
    created_at: datetime
    executed: bool = False
    status: DecisionStatus = DecisionStatus.PENDING
    risk_adjustment: float = 1.0


class PortfolioState(BaseModel):
    """
    Read-only view of a user's portfolio at sizing time.
    Populated by the PortfolioStore inside the user's transaction.
    """
    user_id: int
    balance: float
    equity: float
    available_balance: float
    risk_value: float
    risk_mode: RiskMode = RiskMode.MODERATE

    @property
    def base_risk_amount(self) -> float:
        return self.available_balance * self.risk_value / 100.0


class MarketRegimeSnapshot(BaseModel):
    """Latest regime analytics for one symbol."""
    model_config = ConfigDict(from_attributes=True)

    symbol: str
    regime: str
    regime_confidence: float = Field(ge=0, le=1)
    volatility_24h: float = 0.0
    anomaly_score: float = Field(default=0.0, ge=0, le=1)
    timestamp: datetime


class MarketSummary(BaseModel):
    """Aggregate market health / sentiment for one calendar day."""
    model_config = ConfigDict(from_attributes=True)

    summary_date: date
    market_sentiment: str
    market_health_score: float = Field(ge=0, le=100)
    trend_strength: float = Field(ge=0, le=100)
    regime_percentages: Dict[str, float] = Field(default_factory=dict)

    def regime_pct(self, regime: str) -> float:
        return float((self.regime_percentages or {}).get(regime, 0) or 0)
