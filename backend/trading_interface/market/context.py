import logging
from datetime import date, datetime
from typing import Optional

from core.database import SessionLocal, StoredMarketRegime, StoredRegimeSummary
from core.portfolio_state import MarketRegimeSnapshot, MarketSummary
from core.trading_config import get_config
from trading_interface.market.base import AbstractPriceFeed, format_symbol
from trading_interface.market.exceptions import MarketDataException

logger = logging.getLogger("MarketData")


def build_price_feed(source: Optional[str] = None) -> AbstractPriceFeed:
    source = (source or get_config().market_data_source).lower()
    if source == "yahoo":
        from trading_interface.market.yahoo import YahooPriceFeed
        return YahooPriceFeed()
    from trading_interface.market.binance import BinanceFuturesPriceFeed
    return BinanceFuturesPriceFeed()


class MarketContextProvider:
    """
    The engine's single view of the market: live prices from a price feed,
    regime analytics and the daily summary from the analytics tables.
    Price methods never raise: failures are logged and surface as None so
    callers can skip the affected user or position.
    """

    def __init__(self, price_feed: AbstractPriceFeed, session_factory=SessionLocal):
        self.feed = price_feed
        self.session_factory = session_factory
        self.quote_asset = get_config().quote_asset

    async def _safe(self, kind: str, fetch, symbol: str) -> Optional[float]:
        try:
            price = await fetch(symbol)
        except MarketDataException as e:
            logger.error(f"{kind} price unavailable for {symbol}: {e}")
            return None
        except Exception as e:
            logger.error(f"Unexpected {kind} price error for {symbol}: {e}")
            return None
        if price is None or price <= 0:
            logger.error(f"Invalid {kind} price for {symbol}: {price}")
            return None
        return price

    async def get_current_price(self, symbol: str) -> Optional[float]:
        return await self._safe("current", self.feed.get_current_price, symbol)

    async def get_bid_price(self, symbol: str) -> Optional[float]:
        price = await self._safe("bid", self.feed.get_bid_price, symbol)
        if price is None:
            logger.info(f"Falling back to last price for {symbol} bid")
            return await self.get_current_price(symbol)
        return price

    async def get_ask_price(self, symbol: str) -> Optional[float]:
        price = await self._safe("ask", self.feed.get_ask_price, symbol)
        if price is None:
            logger.info(f"Falling back to last price for {symbol} ask")
            return await self.get_current_price(symbol)
        return price

    async def get_close_price(self, symbol: str, position_type: str) -> Optional[float]:
        """LONG exits hit the bid, SHORT exits lift the ask."""
        if position_type == "LONG":
            return await self.get_bid_price(symbol)
        return await self.get_ask_price(symbol)

    def get_latest_regime(self, symbol: str) -> Optional[MarketRegimeSnapshot]:
        candidates = {symbol, format_symbol(symbol, self.quote_asset)}
        db = self.session_factory()
        try:
            row = (
                db.query(StoredMarketRegime)
                .filter(StoredMarketRegime.symbol.in_(candidates))
                .order_by(StoredMarketRegime.timestamp.desc())
                .first()
            )
            return MarketRegimeSnapshot.model_validate(row) if row else None
        except Exception as e:
            logger.error(f"Regime lookup failed for {symbol}: {e}")
            return None
        finally:
            db.close()

    def get_todays_summary(self, today: Optional[date] = None) -> Optional[MarketSummary]:
        today = today or datetime.utcnow().date()
        db = self.session_factory()
        try:
            row = (
                db.query(StoredRegimeSummary)
                .filter(StoredRegimeSummary.summary_date == today)
                .first()
            )
            return MarketSummary.model_validate(row) if row else None
        except Exception as e:
            logger.error(f"Market summary lookup failed: {e}")
            return None
        finally:
            db.close()
