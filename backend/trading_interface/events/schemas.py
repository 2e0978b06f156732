"""
Engine event and result schemas.
Every value returned across the engine's public surface (scheduler, HTTP,
notifier) is one of these pydantic models rather than a loose dict.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class ValidationResult(BaseModel):
    valid: bool
    reason: str
    risk_adjustment: float = 1.0
    status: Optional[str] = None       # REJECTED | EXPIRED when invalid


class SizingResult(BaseModel):
    base_amount: float
    multiplier: float                  # after the [0.1, 2.0] clamp, before market adjustment
    market_adjustment: float
    risk_amount: float
    breakdown: dict = Field(default_factory=dict)


class TradeNotification(BaseModel):
    kind: str                          # trade_executed | trade_error | position_closed | execution_summary
    user_id: Optional[int] = None
    symbol: str
    action: str
    message: str
    pnl: Optional[float] = None
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class UserExecutionResult(BaseModel):
    user_id: int
    outcome: str                       # OPENED | SKIPPED | FAILED
    reason: str = ""
    position_id: Optional[int] = None


class ExecutionSummary(BaseModel):
    decision_id: int
    symbol: str
    action: str
    status: str
    reason: str = ""
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    results: List[UserExecutionResult] = Field(default_factory=list)


class CloseResult(BaseModel):
    success: bool
    position_id: Optional[int] = None
    symbol: Optional[str] = None
    pnl: float = 0.0
    close_price: Optional[float] = None
    available_balance: Optional[float] = None
    message: str = ""


class AutoCloseSummary(BaseModel):
    closed_count: int = 0
    total_pnl: float = 0.0
    processed: int = 0
    skipped: int = 0
    failed: int = 0


class CloseAllSummary(BaseModel):
    success: bool = True
    closed_count: int = 0
    total_pnl: float = 0.0
    results: List[CloseResult] = Field(default_factory=list)
    message: str = ""


class RepairResult(BaseModel):
    success: bool
    message: str
    balance: Optional[float] = None
    equity: Optional[float] = None
    realized_pnl: Optional[float] = None
    floating_pnl: Optional[float] = None
