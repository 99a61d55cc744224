"""
Exchange-backed crypto rate provider.
Serves the mid-market price of an exchange product as the FX rate.
"""

from datetime import datetime
from typing import Any, List, Set

from .base import BaseRateProvider, RateUnavailableError
from ..api.schemas import CurrencyPair, FXRate


class CryptoProvider(BaseRateProvider):
    """
    Rate provider backed by an exchange's public market data API.

    The exchange object must provide ``load_products()``, returning items with an
    ``id`` such as ``BTC-USD``, and ``load_mid_market_price(product_id)``.
    """

    def __init__(self, exchange: Any, **kwargs):
        owner = getattr(exchange, 'owner', type(exchange).__name__)
        super().__init__(name=f"CryptoProvider ({owner})", **kwargs)
        self.exchange = exchange

    async def _download_catalogue(self) -> Set[str]:
        products: List[Any] = await self.exchange.load_products()
        return {product.id for product in products}

    async def supports_pair(self, pair: CurrencyPair) -> bool:
        try:
            products = await self._load_catalogue()
        except Exception as e:
            # a failed product load is retried on the next call
            self.logger.warning("CryptoProvider could not load a list of products", extra={
                "provider": self.name,
                "error": str(e)
            })
            return False
        return pair.as_string() in products

    async def _download_current_rate(self, pair: CurrencyPair) -> FXRate:
        product = pair.as_string()
        try:
            price = await self.exchange.load_mid_market_price(product)
        except Exception as e:
            self.logger.warning("Failed to download rate from exchange", extra={
                "provider": self.name,
                "pair": product,
                "error": str(e)
            })
            raise RateUnavailableError(str(e), self.name, pair) from e
        return self._create_rate(pair, price, timestamp=datetime.utcnow())
