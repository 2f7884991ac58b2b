from cryptodash.pricing.cache_store import PriceCacheStore
from cryptodash.pricing.resolver import (
    BinancePriceFeed,
    CoinGeckoPriceFeed,
    MarketPriceResolver,
    PriceQuote,
    PriceResolver,
    PriceSource,
)

__all__ = [
    "PriceCacheStore", "BinancePriceFeed", "CoinGeckoPriceFeed",
    "MarketPriceResolver", "PriceQuote", "PriceResolver", "PriceSource",
]
