"""
Current price resolution with provenance.

Order of preference:
  1. binance    - primary market feed (spot ticker against the quote asset)
  2. coingecko  - secondary market feed
  3. db_cache   - last live price seen, if younger than price_cache_ttl_seconds
  4. avg_entry  - the caller's fallback (normally the average entry price),
                  flagged as estimated

The resolver always returns a quote. A feed failure only moves resolution to
the next source; it never reaches the caller.
"""

from __future__ import annotations

import asyncio
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Optional, Protocol

import aiohttp
from aiolimiter import AsyncLimiter

from cryptodash.pricing.cache_store import PriceCacheStore
from cryptodash.utils.config import get_settings
from cryptodash.utils.exceptions import PriceFeedError
from cryptodash.utils.logger import get_logger

logger = get_logger(__name__)


class PriceSource(str, Enum):
    BINANCE = "binance"
    COINGECKO = "coingecko"
    DB_CACHE = "db_cache"
    AVG_ENTRY = "avg_entry"


@dataclass
class PriceQuote:
    price: float
    source: PriceSource
    is_estimated: bool

    def to_dict(self) -> dict:
        d = asdict(self)
        d["source"] = self.source.value
        return d


class PriceResolver(Protocol):
    async def resolve_current_price(self, account_id: str, symbol: str,
                                    fallback_price: float) -> PriceQuote: ...


# Symbols CoinGecko lists under an id that differs from the lowercase ticker
COINGECKO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "BNB": "binancecoin",
    "XRP": "ripple",
    "ADA": "cardano",
    "DOGE": "dogecoin",
    "DOT": "polkadot",
    "AVAX": "avalanche-2",
    "MATIC": "matic-network",
    "LINK": "chainlink",
    "LTC": "litecoin",
    "TRX": "tron",
    "ATOM": "cosmos",
    "USDT": "tether",
    "USDC": "usd-coin",
}


class HttpPriceFeed(ABC):
    """Shared aiohttp session handling for a single JSON price API."""

    source: PriceSource

    def __init__(self, base_url: str, rate_limit: Optional[float] = None,
                 timeout: Optional[float] = None) -> None:
        settings = get_settings()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout or settings.price_request_timeout
        self._limiter = AsyncLimiter(rate_limit or settings.rate_limit_price_feed, 1)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        url = f"{self._base_url}{path}"
        try:
            async with self._limiter:
                session = await self._get_session()
                async with session.get(url, params=params) as response:
                    if response.status == 429:
                        raise PriceFeedError(f"{self.source.value} rate limited", 429)
                    if response.status != 200:
                        raise PriceFeedError(
                            f"{self.source.value} returned HTTP {response.status}", response.status
                        )
                    return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PriceFeedError(f"{self.source.value} request failed: {e}") from e
        except ValueError as e:
            raise PriceFeedError(f"{self.source.value} returned malformed JSON: {e}") from e

    @abstractmethod
    async def fetch_price(self, symbol: str) -> float:
        """Last USD price for an upper-case ticker; raises PriceFeedError on any failure."""


class BinancePriceFeed(HttpPriceFeed):
    source = PriceSource.BINANCE

    def __init__(self, base_url: Optional[str] = None, quote_asset: Optional[str] = None,
                 **kwargs: Any) -> None:
        settings = get_settings()
        super().__init__(base_url or settings.binance_base_url, **kwargs)
        self._quote = (quote_asset or settings.quote_asset).upper()

    async def fetch_price(self, symbol: str) -> float:
        if symbol == self._quote:
            raise PriceFeedError(f"{symbol} is the quote asset", 400)
        data = await self._get_json("/api/v3/ticker/price", {"symbol": f"{symbol}{self._quote}"})
        try:
            return float(data["price"])
        except (KeyError, TypeError, ValueError) as e:
            raise PriceFeedError(f"binance: unexpected payload for {symbol}") from e


class CoinGeckoPriceFeed(HttpPriceFeed):
    source = PriceSource.COINGECKO

    def __init__(self, base_url: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(base_url or get_settings().coingecko_base_url, **kwargs)
        self._ids: dict[str, str] = dict(COINGECKO_IDS)

    async def _coin_id(self, symbol: str) -> str:
        if symbol in self._ids:
            return self._ids[symbol]
        data = await self._get_json("/search", {"query": symbol})
        coins = data.get("coins") if isinstance(data, dict) else None
        for coin in coins if isinstance(coins, list) else []:
            if not isinstance(coin, dict) or not coin.get("id"):
                continue
            if str(coin.get("symbol", "")).upper() == symbol:
                self._ids[symbol] = str(coin["id"])
                return self._ids[symbol]
        raise PriceFeedError(f"coingecko: no coin id for {symbol}", 404)

    async def fetch_price(self, symbol: str) -> float:
        coin_id = await self._coin_id(symbol)
        data = await self._get_json("/simple/price", {"ids": coin_id, "vs_currencies": "usd"})
        try:
            return float(data[coin_id]["usd"])
        except (KeyError, TypeError, ValueError) as e:
            raise PriceFeedError(f"coingecko: unexpected payload for {symbol}") from e


class MarketPriceResolver:
    def __init__(self, cache: PriceCacheStore, feeds: Optional[list[HttpPriceFeed]] = None,
                 cache_ttl_seconds: Optional[int] = None) -> None:
        self._cache = cache
        self._feeds = feeds if feeds is not None else [BinancePriceFeed(), CoinGeckoPriceFeed()]
        self._cache_ttl = (cache_ttl_seconds if cache_ttl_seconds is not None
                           else get_settings().price_cache_ttl_seconds)

    async def close(self) -> None:
        for feed in self._feeds:
            await feed.close()

    async def _run(self, fn, *args: Any) -> Any:
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    async def resolve_current_price(self, account_id: str, symbol: str,
                                    fallback_price: float) -> PriceQuote:
        sym = symbol.strip().upper()

        for feed in self._feeds:
            try:
                price = await feed.fetch_price(sym)
            except PriceFeedError as e:
                logger.warning("price_feed_failed", source=feed.source.value, symbol=sym, error=str(e))
                continue
            if math.isfinite(price) and price > 0:
                await self._run(self._cache.put, sym, price, feed.source.value)
                return PriceQuote(price=price, source=feed.source, is_estimated=False)

        cached = await self._run(self._cache.get, sym, self._cache_ttl)
        if cached is not None and cached[0] > 0:
            return PriceQuote(price=cached[0], source=PriceSource.DB_CACHE, is_estimated=False)

        logger.info("price_estimated_from_entry", account_id=account_id, symbol=sym)
        return PriceQuote(price=max(fallback_price or 0.0, 0.0),
                          source=PriceSource.AVG_ENTRY, is_estimated=True)
