"""
Failover rate calculator.
Tries each wrapped calculator in order until one produces a rate for the pair.
"""

from typing import Any, Dict, List, Optional
import logging

from .base import BaseRateCalculator
from ..api.schemas import CurrencyPair, FXRate
from ..core.concurrency import first_success, join_all, sequence


class FailoverCalculator(BaseRateCalculator):
    """Calculator that falls back through an ordered list of calculators, per pair."""

    def __init__(self, calculators: List[BaseRateCalculator], logger: Optional[logging.Logger] = None):
        super().__init__(logger)
        self.calculators = list(calculators)
        self.last_calculator_used: Optional[BaseRateCalculator] = None

    def get_last_request_info(self) -> Dict[str, Any]:
        return {'calculator': self.last_calculator_used}

    async def calculate_rates_for(self, pairs: List[CurrencyPair]) -> List[Optional[FXRate]]:
        results = await join_all(pairs, self._request_rate_for)
        return [result if isinstance(result, FXRate) else None for result in results]

    async def _request_rate_for(self, pair: CurrencyPair) -> Optional[FXRate]:
        async def attempt(calculator: BaseRateCalculator) -> Optional[FXRate]:
            result = await calculator.calculate_rates_for([pair])
            if not result or result[0] is None or result[0].rate is None:
                return None
            self.last_calculator_used = calculator
            return result[0]

        rate = await first_success(self.calculators, attempt)
        if rate is None:
            self.logger.info("No calculator could provide a rate", extra={
                "pair": pair.as_string(),
                "calculators": len(self.calculators)
            })
        return rate

    async def disconnect(self) -> None:
        await sequence(self.calculators, lambda calculator: calculator.disconnect())
