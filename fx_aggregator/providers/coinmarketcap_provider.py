"""
CoinMarketCap rate provider implementation.
Provides crypto-fiat and crypto-crypto rates using the CoinMarketCap API.
"""

from datetime import datetime
from typing import Dict, Optional

from .base import BaseRateProvider, ProviderError, RateUnavailableError
from ..api.schemas import CurrencyPair, FXRate
from ..core.config import settings, provider_config

SUPPORTED_QUOTE_CURRENCIES = frozenset([
    'BTC', 'USD', 'AUD', 'BRL', 'CAD', 'CHF', 'CNY', 'EUR', 'GBP', 'HKD',
    'IDR', 'INR', 'JPY', 'KRW', 'MXN', 'RUB'
])


class CoinMarketCapProvider(BaseRateProvider):
    """CoinMarketCap provider for cryptocurrency rates."""

    def __init__(self, api_key: Optional[str] = None, cache_duration: Optional[float] = None, **kwargs):
        super().__init__(
            name="Coinmarketcap.com",
            api_key=api_key or settings.coinmarketcap_api_key,
            base_url=provider_config.COINMARKETCAP_URL,
            cache_duration=cache_duration if cache_duration is not None else settings.coinmarketcap_cache_duration,
            **kwargs
        )

    def _get_auth_headers(self) -> Optional[Dict[str, str]]:
        """CoinMarketCap uses API key in headers."""
        if not self.api_key:
            return None
        return {'X-CMC_PRO_API_KEY': self.api_key}

    async def _download_catalogue(self) -> Dict[str, int]:
        """Map of listed crypto symbols to CoinMarketCap ids."""
        data = await self._make_request(method="GET", url=f"{self.base_url}/cryptocurrency/map")
        listings = data.get('data') if isinstance(data, dict) else None
        if not isinstance(listings, list):
            raise ProviderError(f"Could not get list of supported currencies from {self.name}", self.name)

        code_map = {}
        for listing in listings:
            symbol = (listing.get('symbol') or '').upper()
            # listings are ranked, keep the first id for duplicated symbols
            if symbol and symbol not in code_map:
                code_map[symbol] = listing.get('id')
        return code_map

    async def supports_pair(self, pair: CurrencyPair) -> bool:
        """
        Valid quote currencies are USD, BTC, or one of the fiat currencies in
        SUPPORTED_QUOTE_CURRENCIES. Base currencies come from the listings
        catalogue, downloaded on first use.
        """
        if pair.to_currency not in SUPPORTED_QUOTE_CURRENCIES:
            return False
        code_map = await self._load_catalogue()
        return pair.from_currency in code_map

    async def _download_current_rate(self, pair: CurrencyPair) -> FXRate:
        """Get the latest quote; CoinMarketCap refreshes every 5 minutes, so cache per pair."""
        key = pair.as_string()
        cached = self._get_cached(key)
        if cached is not None:
            return cached

        data = await self._make_request(
            method="GET",
            url=f"{self.base_url}/cryptocurrency/quotes/latest",
            params={
                'symbol': pair.from_currency,
                'convert': pair.to_currency
            }
        )

        if not isinstance(data, dict) or not isinstance(data.get('data'), dict):
            raise RateUnavailableError("We got a response, but the FX rates weren't present", self.name, pair)

        coin_data = data['data'].get(pair.from_currency)
        if isinstance(coin_data, list):
            coin_data = coin_data[0] if coin_data else None
        if not isinstance(coin_data, dict) or 'quote' not in coin_data:
            raise RateUnavailableError(f"Invalid CoinMarketCap currency symbol: {pair.from_currency}", self.name, pair)
        if not isinstance(coin_data['quote'], dict):
            raise RateUnavailableError("We got a response, but the quote was malformed", self.name, pair)

        quote = coin_data['quote'].get(pair.to_currency)
        if not isinstance(quote, dict):
            raise RateUnavailableError(f"No {pair.to_currency} quote for {pair.from_currency}", self.name, pair)
        last_updated = quote.get('last_updated')
        timestamp = None
        if isinstance(last_updated, str) and last_updated:
            timestamp = datetime.fromisoformat(last_updated.replace('Z', '+00:00')).replace(tzinfo=None)

        rate = self._create_rate(pair, quote.get('price'), timestamp=timestamp)
        self._set_cached(key, rate)

        self.logger.debug("Retrieved quote from CoinMarketCap", extra={
            "provider": self.name,
            "pair": key
        })
        return rate
