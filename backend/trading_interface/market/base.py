import abc
from typing import Optional


def format_symbol(symbol: str, quote_asset: str = "USDT") -> str:
    """Normalise 'btc' / 'BTC' / 'BTCUSDT' to the quote-suffixed exchange symbol."""
    symbol = symbol.strip().upper()
    if symbol.endswith(quote_asset):
        return symbol
    return symbol + quote_asset


class AbstractPriceFeed(abc.ABC):
    """
    Standardized, venue-agnostic price interface wrapping external market data APIs.
    Every concrete class (e.g., BinanceFuturesPriceFeed) MUST implement these methods.
    Implementations raise MarketDataException subclasses on failure; the
    MarketContextProvider converts those into `None` for the engine.
    """

    @abc.abstractmethod
    async def get_current_price(self, symbol: str) -> float:
        """Last traded price."""
        pass

    @abc.abstractmethod
    async def get_bid_price(self, symbol: str) -> float:
        """Best bid; used to close LONG positions."""
        pass

    @abc.abstractmethod
    async def get_ask_price(self, symbol: str) -> float:
        """Best ask; used to close SHORT positions."""
        pass

    async def aclose(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
