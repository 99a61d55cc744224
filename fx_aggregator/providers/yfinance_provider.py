"""
Yahoo Finance rate provider implementation.
Provides fiat FX rates using the yfinance library.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Optional
import asyncio

import yfinance as yf

from .base import BaseRateProvider, ProviderError
from ..api.schemas import CurrencyPair, FXRate

# Yahoo publishes FX crosses as <FROM><TO>=X tickers but has no catalogue endpoint
SUPPORTED_CURRENCIES = frozenset([
    'AED', 'ARS', 'AUD', 'BRL', 'CAD', 'CHF', 'CLP', 'CNY', 'COP', 'CZK',
    'DKK', 'EUR', 'GBP', 'HKD', 'HUF', 'IDR', 'ILS', 'INR', 'ISK', 'JPY',
    'KRW', 'MXN', 'MYR', 'NOK', 'NZD', 'PEN', 'PHP', 'PLN', 'RON', 'RUB',
    'SAR', 'SEK', 'SGD', 'THB', 'TRY', 'TWD', 'USD', 'ZAR'
])


class YahooFXProvider(BaseRateProvider):
    """Yahoo Finance FX provider."""

    def __init__(self, executor: Optional[ThreadPoolExecutor] = None, **kwargs):
        super().__init__(name="Yahoo Finance", **kwargs)
        self._owns_executor = executor is None
        self._executor: Optional[ThreadPoolExecutor] = executor

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=4)
        return self._executor

    async def disconnect(self) -> None:
        await super().disconnect()
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    async def supports_pair(self, pair: CurrencyPair) -> bool:
        return pair.from_currency in SUPPORTED_CURRENCIES and pair.to_currency in SUPPORTED_CURRENCIES

    def _normalize_symbol(self, pair: CurrencyPair) -> str:
        """Convert a currency pair to Yahoo's ticker format."""
        return f"{pair.from_currency}{pair.to_currency}=X"

    async def _download_current_rate(self, pair: CurrencyPair) -> FXRate:
        symbol = self._normalize_symbol(pair)

        # Use thread pool to run synchronous yfinance code
        price = await asyncio.get_running_loop().run_in_executor(
            self._get_executor(),
            self._fetch_price_sync,
            symbol
        )

        self.logger.debug("Retrieved rate from Yahoo Finance", extra={
            "provider": self.name,
            "symbol": symbol
        })
        return self._create_rate(pair, price, timestamp=datetime.utcnow())

    def _fetch_price_sync(self, symbol: str) -> Any:
        """Synchronous function to fetch the last price using yfinance."""
        try:
            ticker = yf.Ticker(symbol)
            price = ticker.fast_info.last_price
            if not price:
                history = ticker.history(period="1d")
                if not history.empty:
                    price = history['Close'].iloc[-1]
            return price
        except Exception as e:
            self.logger.warning("Failed to fetch data for symbol", extra={
                "symbol": symbol,
                "error": str(e),
                "provider": self.name
            })
            raise ProviderError(f"Failed to fetch rate for {symbol}: {str(e)}", self.name)
