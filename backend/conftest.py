from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from core.alerts import TradeNotifier
from core.database import (
    Base, StoredDecision, StoredMarketRegime, StoredPortfolio, StoredPosition,
    StoredRegimeSummary, make_engine,
)
from trading_interface.events.schemas import TradeNotification
from trading_interface.market.base import AbstractPriceFeed
from trading_interface.market.context import MarketContextProvider
from trading_interface.market.exceptions import DataUnavailableError


class FakePriceFeed(AbstractPriceFeed):
    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices = dict(prices or {})
        self.bids: Dict[str, float] = {}
        self.asks: Dict[str, float] = {}
        self.calls: List[str] = []

    async def get_current_price(self, symbol: str) -> float:
        self.calls.append(symbol)
        if symbol not in self.prices:
            raise DataUnavailableError(f"no price for {symbol}")
        return self.prices[symbol]

    async def get_bid_price(self, symbol: str) -> float:
        if symbol not in self.bids:
            raise DataUnavailableError(f"no bid for {symbol}")
        return self.bids[symbol]

    async def get_ask_price(self, symbol: str) -> float:
        if symbol not in self.asks:
            raise DataUnavailableError(f"no ask for {symbol}")
        return self.asks[symbol]


class RecordingNotifier(TradeNotifier):
    def __init__(self):
        self.events: List[TradeNotification] = []

    async def send(self, event: TradeNotification) -> None:
        self.events.append(event)

    def kinds(self) -> List[str]:
        return [e.kind for e in self.events]


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def price_feed():
    return FakePriceFeed({"BTCUSDT": 100.0, "ETHUSDT": 50.0})


@pytest.fixture
def market(price_feed, session_factory):
    return MarketContextProvider(price_feed, session_factory=session_factory)


@pytest.fixture
def notifier():
    return RecordingNotifier()


# ---------------------------------------------------------------------------
# Row builders
# ---------------------------------------------------------------------------
def add_portfolio(db, user_id: int, balance: float = 10_000.0, risk_value: float = 10.0,
                  risk_mode: str = "MODERATE", enabled: bool = True, **kwargs) -> StoredPortfolio:
    portfolio = StoredPortfolio(
        user_id=user_id,
        balance=balance,
        equity=kwargs.pop("equity", balance),
        initial_balance=kwargs.pop("initial_balance", balance),
        realized_pnl=0.0,
        floating_pnl=0.0,
        risk_mode=risk_mode,
        risk_value=risk_value,
        ai_trade_enabled=enabled,
        **kwargs,
    )
    db.add(portfolio)
    db.commit()
    return portfolio


def add_decision(db, symbol: str = "BTCUSDT", action: str = "BUY", confidence: float = 75.0,
                 age_minutes: float = 1, **kwargs) -> StoredDecision:
    decision = StoredDecision(
        symbol=symbol,
        action=action,
        confidence=confidence,
        price=kwargs.pop("price", None),
        explanation=kwargs.pop("explanation", "model rationale"),
        created_at=datetime.utcnow() - timedelta(minutes=age_minutes),
        **kwargs,
    )
    db.add(decision)
    db.commit()
    return decision


def add_position(db, portfolio: StoredPortfolio, symbol: str = "BTCUSDT", position_type: str = "LONG",
                 entry_price: float = 100.0, investment: float = 1000.0, **kwargs) -> StoredPosition:
    position = StoredPosition(
        user_id=portfolio.user_id,
        portfolio_id=portfolio.id,
        symbol=symbol,
        position_type=position_type,
        quantity=investment / entry_price,
        entry_price=entry_price,
        current_price=kwargs.pop("current_price", entry_price),
        investment=investment,
        floating_pnl=kwargs.pop("floating_pnl", 0.0),
        status="OPEN",
        **kwargs,
    )
    db.add(position)
    db.commit()
    return position


def add_regime(db, symbol: str = "BTCUSDT", regime: str = "neutral", confidence: float = 0.5,
               volatility: float = 0.015, anomaly: float = 0.1, age_minutes: float = 0) -> StoredMarketRegime:
    row = StoredMarketRegime(
        symbol=symbol,
        regime=regime,
        regime_confidence=confidence,
        volatility_24h=volatility,
        anomaly_score=anomaly,
        timestamp=datetime.utcnow() - timedelta(minutes=age_minutes),
    )
    db.add(row)
    db.commit()
    return row


def add_summary(db, sentiment: str = "neutral", health: float = 70.0, trend: float = 60.0,
                percentages: Optional[Dict[str, float]] = None, day: Optional[date] = None) -> StoredRegimeSummary:
    row = StoredRegimeSummary(
        summary_date=day or datetime.utcnow().date(),
        market_sentiment=sentiment,
        market_health_score=health,
        trend_strength=trend,
        regime_percentages=percentages or {},
    )
    db.add(row)
    db.commit()
    return row
