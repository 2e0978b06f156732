import asyncio
import logging
from typing import Optional

import httpx

from core.trading_config import get_config
from trading_interface.market.base import AbstractPriceFeed, format_symbol
from trading_interface.market.exceptions import (
    DataUnavailableError, InvalidSymbolError, NetworkError, RateLimitError
)

logger = logging.getLogger("BinanceFuturesFeed")


class BinanceFuturesPriceFeed(AbstractPriceFeed):
    """
    Concrete implementation of AbstractPriceFeed for Binance USDT-M futures.
    Public market-data endpoints only; no keys, no order placement.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 max_retries: Optional[int] = None, client: Optional[httpx.AsyncClient] = None):
        config = get_config()
        self.base_url = (base_url or config.binance_futures_url).rstrip("/")
        self.timeout = timeout if timeout is not None else config.http_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else config.http_max_retries
        self.quote_asset = config.quote_asset
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"accept": "application/json"},
            )
        return self._client

    def _handle_response_errors(self, response: httpx.Response):
        """Translates Binance HTTP error codes into standardized market data exceptions."""
        if response.status_code == 200:
            return

        if response.status_code in (418, 429):
            raise RateLimitError(f"Binance rate limit (HTTP {response.status_code}) hit.")

        if response.status_code == 400:
            try:
                err_msg = response.json().get("msg", "")
            except ValueError:
                err_msg = response.text
            if "invalid symbol" in err_msg.lower():
                raise InvalidSymbolError(f"Symbol not found: {err_msg}")

        if response.status_code >= 500:
            raise NetworkError(f"Binance internal server error: {response.status_code}")

        # Catch-all
        response.raise_for_status()

    async def _get(self, path: str, params: dict) -> dict:
        """GET with bounded retries and exponential backoff on retryable failures."""
        retries = 0
        while True:
            try:
                response = await self._get_client().get(f"{self.base_url}{path}", params=params)
                self._handle_response_errors(response)
                return response.json()

            except (RateLimitError, NetworkError) as e:
                if retries >= self.max_retries:
                    raise DataUnavailableError(f"{path} {params} failed after {retries} retries: {e}")
                backoff = 0.5 * (2 ** retries)
                logger.warning(f"{e} Retrying in {backoff}s...")
                await asyncio.sleep(backoff)
                retries += 1

            except httpx.RequestError as exc:
                if retries >= self.max_retries:
                    raise DataUnavailableError(f"HTTP request error for {path}: {exc}")
                logger.warning(f"HTTP request error for {path} ({exc}). Retrying...")
                await asyncio.sleep(0.5)
                retries += 1

            except httpx.HTTPStatusError as exc:
                raise DataUnavailableError(f"Binance rejected {path}: {exc}")

    async def get_current_price(self, symbol: str) -> float:
        data = await self._get("/ticker/price", {"symbol": format_symbol(symbol, self.quote_asset)})
        return float(data["price"])

    async def _top_of_book(self, symbol: str, side: str) -> float:
        data = await self._get("/depth", {"symbol": format_symbol(symbol, self.quote_asset), "limit": 5})
        levels = data.get(side) or []
        if not levels:
            raise DataUnavailableError(f"Empty {side} book for {symbol}")
        return float(levels[0][0])

    async def get_bid_price(self, symbol: str) -> float:
        return await self._top_of_book(symbol, "bids")

    async def get_ask_price(self, symbol: str) -> float:
        return await self._top_of_book(symbol, "asks")

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
