"""
Trading Engine Configuration
==============================
Single source of truth for the execution engine's policy constants:
  - Decision expiry window and market-health / alignment floors
  - Portfolio-wide open position cap and holding time limit
  - Sweep intervals used by the scheduler
  - External data source selection and HTTP timeouts

Values default to the production policy and can be overridden with
environment variables (loaded from .env) or update_config() at runtime.
"""

import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ── Risk-mode auto-close bands (pnl % of investment) ─────────────────────────
RISK_MODE_BANDS: Dict[str, tuple] = {
    "CONSERVATIVE": (-2.0, 4.0),
    "MODERATE":     (-3.0, 6.0),
    "AGGRESSIVE":   (-5.0, 10.0),
}


@dataclass
class TradingConfig:
    # Persistence
    database_url: str = field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./trading_engine.db")
    )

    # Decision gating
    decision_expiry_minutes: int = field(default_factory=lambda: _env_int("DECISION_EXPIRY_MINUTES", 30))
    min_market_health: float = 30.0
    min_alignment_score: float = 0.3
    weak_trend_threshold: float = 40.0
    weak_trend_adjustment: float = 0.7
    volatile_market_pct: float = 30.0
    volatile_market_adjustment: float = 0.6
    anomaly_reject_score: float = 0.7
    regime_conflict_confidence: float = 0.7

    # Position limits
    max_open_positions: int = field(default_factory=lambda: _env_int("MAX_OPEN_POSITIONS", 10))
    max_holding_hours: float = field(default_factory=lambda: _env_float("MAX_HOLDING_HOURS", 24.0))
    risk_mode_bands: Dict[str, tuple] = field(default_factory=lambda: dict(RISK_MODE_BANDS))

    # Market data
    market_data_source: str = field(default_factory=lambda: os.getenv("MARKET_DATA_SOURCE", "binance"))
    binance_futures_url: str = field(
        default_factory=lambda: os.getenv("BINANCE_FUTURES_URL", "https://fapi.binance.com/fapi/v1")
    )
    quote_asset: str = "USDT"
    http_timeout_seconds: float = field(default_factory=lambda: _env_float("HTTP_TIMEOUT_SECONDS", 10.0))
    http_max_retries: int = field(default_factory=lambda: _env_int("HTTP_MAX_RETRIES", 2))

    # Notifications
    notify_webhook_url: str = field(default_factory=lambda: os.getenv("NOTIFY_WEBHOOK_URL", ""))

    # Scheduler sweeps (seconds)
    scheduler_enabled: bool = field(default_factory=lambda: _env_bool("SCHEDULER_ENABLED", True))
    decision_scan_interval: int = 60
    sltp_monitor_interval: int = 60
    pnl_update_interval: int = 300
    auto_close_interval: int = 300


# ── Singleton ────────────────────────────────────────────────────────────────
TRADING_CONFIG = TradingConfig()


def get_config() -> TradingConfig:
    return TRADING_CONFIG


def update_config(**kwargs) -> TradingConfig:
    for k, v in kwargs.items():
        if hasattr(TRADING_CONFIG, k):
            setattr(TRADING_CONFIG, k, v)
    return TRADING_CONFIG
