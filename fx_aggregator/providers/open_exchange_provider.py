"""
Open Exchange Rates provider implementation.
Provides fiat FX rates using the openexchangerates.org API.
"""

from datetime import datetime, timezone
from typing import Dict, Optional, Set

from .base import BaseRateProvider, ProviderError, RateUnavailableError
from ..api.schemas import CurrencyPair, FXRate
from ..core.config import settings, provider_config


class OpenExchangeProvider(BaseRateProvider):
    """
    Open Exchange Rates provider.

    One ``latest.json`` request returns every rate for a base currency, so
    responses are cached per base currency for ``cache_duration`` seconds.
    """

    def __init__(self, api_key: Optional[str] = None, cache_duration: Optional[float] = None, **kwargs):
        super().__init__(
            name="Open Exchange Rates",
            api_key=api_key or settings.openexchangerates_api_key,
            base_url=provider_config.OPEN_EXCHANGE_URL,
            cache_duration=cache_duration if cache_duration is not None else settings.openexchangerates_cache_duration,
            **kwargs
        )

    async def _download_catalogue(self) -> Set[str]:
        """Get the list of supported currency codes."""
        data = await self._make_request(method="GET", url=f"{self.base_url}/currencies.json")
        if not isinstance(data, dict) or not data:
            raise ProviderError(f"Could not get list of supported currencies from {self.name}", self.name)
        return set(data.keys())

    async def supports_pair(self, pair: CurrencyPair) -> bool:
        """Both currencies must appear in the currencies catalogue."""
        currencies = await self._load_catalogue()
        return pair.from_currency in currencies and pair.to_currency in currencies

    async def _download_current_rate(self, pair: CurrencyPair) -> FXRate:
        """Get the latest rate, reusing a cached response for the same base."""
        cached = self._get_cached(pair.from_currency)
        if cached is None:
            data = await self._make_request(
                method="GET",
                url=f"{self.base_url}/latest.json",
                params={
                    'base': pair.from_currency,
                    'app_id': self.api_key
                }
            )
            rates = data.get('rates') if isinstance(data, dict) else None
            if not isinstance(rates, dict):
                raise RateUnavailableError("We got a response, but the FX rates weren't present", self.name, pair)

            timestamp = data.get('timestamp')
            cached = {
                'rates': rates,
                'time': (
                    datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)
                    if isinstance(timestamp, (int, float)) else datetime.utcnow()
                )
            }
            self._set_cached(pair.from_currency, cached)

            self.logger.debug("Retrieved rates from Open Exchange Rates", extra={
                "provider": self.name,
                "base": pair.from_currency,
                "count": len(rates)
            })

        rates: Dict[str, float] = cached['rates']
        return self._create_rate(pair, rates.get(pair.to_currency), timestamp=cached['time'])
