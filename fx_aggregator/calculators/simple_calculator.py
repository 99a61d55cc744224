"""
Single-provider rate calculator.
"""

from typing import Any, Dict, List, Optional
import logging

from .base import BaseRateCalculator
from ..api.schemas import CurrencyPair, FXRate
from ..core.concurrency import join_all
from ..providers.base import BaseRateProvider


class SimpleRateCalculator(BaseRateCalculator):
    """Fetches every pair from a single provider, in parallel."""

    def __init__(self, provider: BaseRateProvider, logger: Optional[logging.Logger] = None):
        super().__init__(logger)
        self.provider = provider

    async def calculate_rates_for(self, pairs: List[CurrencyPair]) -> List[Optional[FXRate]]:
        results = await join_all(pairs, self.provider.fetch_current_rate)

        rates: List[Optional[FXRate]] = []
        for pair, result in zip(pairs, results):
            if isinstance(result, BaseException):
                self.logger.warning(str(result), extra={
                    "provider": self.provider.name,
                    "pair": pair.as_string()
                })
                rates.append(None)
            else:
                rates.append(result)
        return rates

    def get_last_request_info(self) -> Dict[str, Any]:
        return {'provider': self.provider}

    async def disconnect(self) -> None:
        await self.provider.disconnect()
