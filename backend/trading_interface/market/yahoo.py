import asyncio
import logging
from datetime import datetime

import pandas as pd
import yfinance as yf

from core.trading_config import get_config
from trading_interface.market.base import AbstractPriceFeed, format_symbol
from trading_interface.market.exceptions import DataUnavailableError

logger = logging.getLogger("YahooPriceFeed")

# Module-level cache, survives across feed instances within a process.
_PRICE_CACHE: dict = {}


def to_yahoo_ticker(symbol: str, quote_asset: str = "USDT") -> str:
    """BTCUSDT -> BTC-USD (Yahoo quotes crypto against USD)."""
    base = format_symbol(symbol, quote_asset)[: -len(quote_asset)]
    return f"{base}-USD"


class YahooPriceFeed(AbstractPriceFeed):
    """
    Fallback price source backed by Yahoo Finance (yfinance).
    No order book is available, so bid/ask fall back to the quote's
    bid/ask fields and then to the last close.
    """

    CACHE_TTL_SECONDS = 30

    def __init__(self):
        self.quote_asset = get_config().quote_asset

    def _download_last_close(self, ticker: str) -> float:
        df = yf.download(ticker, period="1d", interval="1m", progress=False)
        if df.empty:
            raise DataUnavailableError(f"yfinance returned empty dataset for {ticker}")

        # Handle MultiIndex columns (yfinance v0.2+)
        if isinstance(df.columns, pd.MultiIndex):
            close_col = ("Close", ticker)
        else:
            close_col = "Close"

        price = float(df[close_col].iloc[-1])
        if pd.isna(price) or price <= 0:
            raise DataUnavailableError(f"yfinance returned invalid close for {ticker}")
        return price

    async def get_current_price(self, symbol: str) -> float:
        ticker = to_yahoo_ticker(symbol, self.quote_asset)
        now = datetime.utcnow()
        cached = _PRICE_CACHE.get(ticker)
        if cached:
            cached_time, cached_price = cached
            if (now - cached_time).total_seconds() < self.CACHE_TTL_SECONDS:
                return cached_price

        try:
            price = await asyncio.to_thread(self._download_last_close, ticker)
        except DataUnavailableError:
            raise
        except Exception as e:
            raise DataUnavailableError(f"yfinance price fetch failed for {ticker}: {e}")

        _PRICE_CACHE[ticker] = (now, price)
        return price

    async def _quote_field(self, symbol: str, field: str) -> float:
        ticker = to_yahoo_ticker(symbol, self.quote_asset)
        try:
            info = await asyncio.to_thread(lambda: yf.Ticker(ticker).info)
            value = info.get(field)
            if value:
                return float(value)
        except Exception as e:
            logger.warning(f"Quote {field} unavailable for {ticker}: {e}. Falling back to last price.")
        return await self.get_current_price(symbol)

    async def get_bid_price(self, symbol: str) -> float:
        return await self._quote_field(symbol, "bid")

    async def get_ask_price(self, symbol: str) -> float:
        return await self._quote_field(symbol, "ask")
