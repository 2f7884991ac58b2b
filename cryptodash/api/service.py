from __future__ import annotations

from typing import Optional

from cryptodash.exit_strategy.engine import ExitStrategyEngine
from cryptodash.exit_strategy.service import ExitStrategyService
from cryptodash.exit_strategy.store import ExitStrategyStore
from cryptodash.portfolio.holdings import HoldingsService
from cryptodash.portfolio.ledger_store import LedgerStore
from cryptodash.portfolio.service import PortfolioService
from cryptodash.pricing.cache_store import PriceCacheStore
from cryptodash.pricing.resolver import MarketPriceResolver, PriceResolver
from cryptodash.utils.config import get_settings
from cryptodash.utils.logger import get_logger

logger = get_logger(__name__)


class ServiceContainer:
    """Wires stores, price resolution and services for one database."""

    _instance: Optional[ServiceContainer] = None

    def __init__(self, db_path: Optional[str] = None,
                 price_resolver: Optional[PriceResolver] = None) -> None:
        db_path = db_path or get_settings().db_path
        self.ledger = LedgerStore(db_path)
        self.strategies = ExitStrategyStore(db_path)
        self.price_cache = PriceCacheStore(db_path)

        self.holdings = HoldingsService(self.ledger)
        self.portfolio = PortfolioService(self.ledger, self.holdings)
        self.prices = price_resolver or MarketPriceResolver(self.price_cache)
        self.engine = ExitStrategyEngine(self.holdings, self.strategies, self.prices)
        self.exit_strategies = ExitStrategyService(self.strategies, self.holdings, self.engine)
        logger.info("services_created", db_path=db_path)

    @classmethod
    def get_instance(cls) -> ServiceContainer:
        if cls._instance is None:
            cls._instance = ServiceContainer()
        return cls._instance

    @classmethod
    def set_instance(cls, container: Optional[ServiceContainer]) -> None:
        cls._instance = container

    async def close(self) -> None:
        close = getattr(self.prices, "close", None)
        if close is not None:
            await close()
        self.ledger.close()
        self.strategies.close()
        self.price_cache.close()
