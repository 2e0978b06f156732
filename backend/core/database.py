from datetime import datetime

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, JSON, String,
    Text, UniqueConstraint, create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from core.trading_config import get_config

# Swap to PostgreSQL via DATABASE_URL env var in production.
# SQLite is used as a local development fallback only; it ignores FOR UPDATE.
DATABASE_URL = get_config().database_url


def make_engine(url: str):
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
Base = declarative_base()


def init_db(bind=None) -> None:
    """Create all tables (no migrations; schema is owned by this service)."""
    Base.metadata.create_all(bind=bind or engine)


# ---------------------------------------------------------------------------
# AI decisions: produced upstream, mutated only by the execution engine
# ---------------------------------------------------------------------------
class StoredDecision(Base):
    __tablename__ = "ai_decisions"

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String, index=True, nullable=False)
    action = Column(String, nullable=False)            # BUY | SELL | HOLD
    confidence = Column(Float, nullable=False)         # 0-100
    price = Column(Float, nullable=True)
    explanation = Column(Text, default="")
    executed = Column(Boolean, default=False, index=True)
    status = Column(String, default="PENDING")         # PENDING | REJECTED | EXPIRED | EXECUTED
    risk_adjustment = Column(Float, default=1.0)
    market_context = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# ---------------------------------------------------------------------------
# Portfolios, one per user
# ---------------------------------------------------------------------------
class StoredPortfolio(Base):
    __tablename__ = "user_portfolios"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, unique=True, index=True, nullable=False)
    balance = Column(Float, default=0.0)
    equity = Column(Float, default=0.0)
    initial_balance = Column(Float, default=0.0)
    realized_pnl = Column(Float, default=0.0)
    floating_pnl = Column(Float, default=0.0)
    risk_mode = Column(String, default="MODERATE")     # CONSERVATIVE | MODERATE | AGGRESSIVE
    risk_value = Column(Float, default=2.0)            # % of available balance per trade
    ai_trade_enabled = Column(Boolean, default=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------
class StoredPosition(Base):
    __tablename__ = "user_positions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    portfolio_id = Column(Integer, ForeignKey("user_portfolios.id"), nullable=False)
    decision_id = Column(Integer, ForeignKey("ai_decisions.id"), nullable=True)
    symbol = Column(String, index=True, nullable=False)
    position_type = Column(String, nullable=False)     # LONG | SHORT
    quantity = Column(Float, nullable=False)
    entry_price = Column(Float, nullable=False)
    current_price = Column(Float, nullable=False)
    exit_price = Column(Float, nullable=True)
    investment = Column(Float, nullable=False)
    floating_pnl = Column(Float, default=0.0)
    realized_pnl = Column(Float, nullable=True)
    pnl_percentage = Column(Float, default=0.0)
    stop_loss = Column(Float, nullable=True)
    take_profit = Column(Float, nullable=True)
    status = Column(String, default="OPEN", index=True)  # OPEN | CLOSED
    opened_at = Column(DateTime, default=datetime.utcnow)
    closed_at = Column(DateTime, nullable=True)
    close_reason = Column(String, nullable=True)


# ---------------------------------------------------------------------------
# Trade history: append-only ledger, source of truth for repair
# ---------------------------------------------------------------------------
class StoredTradeHistory(Base):
    __tablename__ = "trade_histories"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    decision_id = Column(Integer, nullable=True)
    position_id = Column(Integer, nullable=True)
    symbol = Column(String, nullable=False)
    action = Column(String, nullable=False)            # BUY (open) | SELL (close)
    position_type = Column(String, nullable=False)
    quantity = Column(Float, nullable=False)
    price = Column(Float, nullable=False)
    amount = Column(Float, nullable=False)
    pnl = Column(Float, nullable=True)
    pnl_percentage = Column(Float, nullable=True)
    notes = Column(Text, default="")
    created_at = Column(DateTime, default=datetime.utcnow)


# ---------------------------------------------------------------------------
# Per-(decision, user) execution ledger, makes decision retries safe
# ---------------------------------------------------------------------------
class StoredExecutionRecord(Base):
    __tablename__ = "decision_executions"
    __table_args__ = (UniqueConstraint("decision_id", "user_id", name="uq_decision_user"),)

    id = Column(Integer, primary_key=True)
    decision_id = Column(Integer, ForeignKey("ai_decisions.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False)
    outcome = Column(String, nullable=False)           # OPENED | SKIPPED
    reason = Column(Text, default="")
    created_at = Column(DateTime, default=datetime.utcnow)


# ---------------------------------------------------------------------------
# Market regime analytics: written by the analytics service, read-only here
# ---------------------------------------------------------------------------
class StoredMarketRegime(Base):
    __tablename__ = "market_regimes"

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String, index=True, nullable=False)
    regime = Column(String, nullable=False)            # bull | bear | neutral | reversal
    regime_confidence = Column(Float, default=0.0)
    volatility_24h = Column(Float, default=0.0)
    anomaly_score = Column(Float, default=0.0)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)


class StoredRegimeSummary(Base):
    __tablename__ = "regime_summaries"

    id = Column(Integer, primary_key=True, index=True)
    summary_date = Column(Date, unique=True, index=True, nullable=False)
    market_sentiment = Column(String, nullable=False)
    market_health_score = Column(Float, default=0.0)
    trend_strength = Column(Float, default=0.0)
    regime_percentages = Column(JSON, default=dict)
