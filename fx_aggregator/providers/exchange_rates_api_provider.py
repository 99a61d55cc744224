"""
exchangeratesapi.io provider implementation.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Set

from .base import BaseRateProvider, ProviderError, RateUnavailableError
from ..api.schemas import CurrencyPair, FXRate
from ..core.config import settings, provider_config


class ExchangeRatesAPIProvider(BaseRateProvider):
    """Exchange Rates API provider; responses are cached per base currency."""

    def __init__(self, api_key: Optional[str] = None, cache_duration: Optional[float] = None, **kwargs):
        super().__init__(
            name="Exchange Rates API (https://exchangeratesapi.io/)",
            api_key=api_key or settings.exchangeratesapi_api_key,
            base_url=provider_config.EXCHANGE_RATES_API_URL,
            cache_duration=cache_duration if cache_duration is not None else settings.exchangeratesapi_cache_duration,
            **kwargs
        )

    def _query(self, **params: Any) -> Dict[str, Any]:
        query = {'format': 'json'}
        if self.api_key:
            query['access_key'] = self.api_key
        query.update(params)
        return query

    async def _download_catalogue(self) -> Set[str]:
        data = await self._make_request(method="GET", url=f"{self.base_url}/latest", params=self._query())
        if not isinstance(data, dict) or not data.get('base') or not isinstance(data.get('rates'), dict):
            raise ProviderError(f"Could not get list of supported currencies from {self.name}", self.name)
        return {data['base'], *data['rates'].keys()}

    async def supports_pair(self, pair: CurrencyPair) -> bool:
        currencies = await self._load_catalogue()
        return pair.from_currency in currencies and pair.to_currency in currencies

    async def _download_current_rate(self, pair: CurrencyPair) -> FXRate:
        body = self._get_cached(pair.from_currency)
        if body is None:
            body = await self._make_request(
                method="GET",
                url=f"{self.base_url}/latest",
                params=self._query(base=pair.from_currency)
            )
            if not isinstance(body, dict) or not isinstance(body.get('rates'), dict):
                raise RateUnavailableError(f"Could not download {pair} from {self.name}", self.name, pair)
            self._set_cached(pair.from_currency, body)

        value = body['rates'].get(pair.to_currency)
        if value is None:
            raise RateUnavailableError(f"No exchange rate found for {pair} from {self.name}", self.name, pair)

        timestamp = datetime.fromisoformat(body['date']) if body.get('date') else None
        return self._create_rate(pair, value, timestamp=timestamp)
