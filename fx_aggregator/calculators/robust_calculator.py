"""
Robust consensus rate calculator.

Every source is queried for every pair. A source is trusted for a pair only when
both its price and its price change since the previous update are close to the
cross-source medians:

    |P_i - P_M| < price_threshold * P_M
    |d_i - d_M| < delta_threshold * P_M

where P_M is the median price and d_M the median change. The emitted rate is the
mean price of the trusted sources, provided there are at least
``min_reliable_sources`` of them. The price test rejects a persistently wrong
source; the change test rejects a source in the middle of a flash crash even
while its absolute price still looks plausible.
"""

from datetime import datetime
from decimal import Decimal
from statistics import median
from typing import List, Optional, Sequence, Union
import logging

from .base import BaseRateCalculator
from ..api.schemas import (
    CurrencyPair, FXRate, QueryStatus, RejectReason, RobustCalculatorReport
)
from ..core.concurrency import join_all, sequence
from ..core.config import settings
from ..providers.base import BaseRateProvider


class RobustCalculator(BaseRateCalculator):
    """Consensus calculator over several independent rate sources."""

    def __init__(
        self,
        sources: Sequence[BaseRateProvider],
        price_threshold: Optional[float] = None,
        delta_threshold: Optional[float] = None,
        min_reliable_sources: Optional[int] = None,
        logger: Optional[logging.Logger] = None
    ):
        super().__init__(logger)
        self.price_threshold = Decimal(str(price_threshold if price_threshold is not None else settings.price_threshold))
        self.delta_threshold = Decimal(str(delta_threshold if delta_threshold is not None else settings.delta_threshold))
        self.min_reliable_sources = (
            min_reliable_sources if min_reliable_sources is not None else settings.min_reliable_sources
        )
        self.sources: List[BaseRateProvider] = []
        self._report = RobustCalculatorReport()
        self.set_sources(sources)

    def set_sources(self, sources: Sequence[BaseRateProvider]) -> None:
        """Replace the source list. The diagnostic report starts over."""
        self.sources = list(sources)
        self._report = RobustCalculatorReport(sources=[source.name for source in self.sources])

    def get_last_request_info(self) -> RobustCalculatorReport:
        return self._report

    async def calculate_rates_for(self, pairs: List[CurrencyPair]) -> List[Optional[FXRate]]:
        results = await join_all(pairs, self._determine_rate_for_pair)

        rates: List[Optional[FXRate]] = []
        for pair, result in zip(pairs, results):
            if isinstance(result, BaseException):
                self.logger.error("Robust rate calculation failed", extra={
                    "pair": pair.as_string(),
                    "error": str(result)
                })
                rates.append(None)
            else:
                rates.append(result)
        return rates

    async def _determine_rate_for_pair(self, pair: CurrencyPair) -> Optional[FXRate]:
        results = await join_all(self.sources, lambda source: source.fetch_current_rate(pair))
        rate = self._calculate_robust_rate(pair, results)
        if rate is None:
            return None
        return FXRate(
            from_currency=pair.from_currency,
            to_currency=pair.to_currency,
            time=datetime.utcnow(),
            rate=rate
        )

    def _calculate_robust_rate(
        self,
        pair: CurrencyPair,
        results: List[Union[FXRate, BaseException]]
    ) -> Optional[Decimal]:
        key = pair.as_string()
        count = len(results)
        previous = self._report.data.get(key)
        last_prices = list(previous.prices) if previous else []
        last_prices += [None] * (count - len(last_prices))

        prices: List[Optional[Decimal]] = [None] * count
        deltas: List[Optional[Decimal]] = [None] * count
        valid = [False] * count
        reject_reason = [RejectReason.NONE] * count
        errors: List[Optional[str]] = [None] * count

        for i, result in enumerate(results):
            if isinstance(result, BaseException) or result is None or not result.has_usable_rate():
                errors[i] = str(result) if isinstance(result, BaseException) else None
                reject_reason[i] = RejectReason.NO_CURRENT_PRICE
                continue
            valid[i] = True
            prices[i] = result.rate
            last_price = last_prices[i]
            deltas[i] = result.rate - last_price if last_price is not None else Decimal(0)

        valid_indices = [i for i in range(count) if valid[i]]
        rate: Optional[Decimal] = None

        if len(valid_indices) < self.min_reliable_sources:
            self.logger.info("Not enough sources with a current price", extra={
                "pair": key,
                "valid": len(valid_indices),
                "required": self.min_reliable_sources
            })
        else:
            median_price = median([prices[i] for i in valid_indices])
            median_delta = median([deltas[i] for i in valid_indices])
            price_limit = self.price_threshold * median_price
            delta_limit = self.delta_threshold * median_price

            reliable: List[Decimal] = []
            for i in valid_indices:
                price_deviation = abs(prices[i] - median_price)
                delta_deviation = abs(deltas[i] - median_delta)
                if price_deviation >= price_limit:
                    reject_reason[i] = RejectReason.PRICE_DEVIATION
                if delta_deviation >= delta_limit:
                    reject_reason[i] = RejectReason.PRICE_CHANGE_DEVIATION
                if price_deviation < price_limit and delta_deviation < delta_limit:
                    reliable.append(prices[i])

            if len(reliable) < self.min_reliable_sources:
                self.logger.warning("Not enough reliable sources agree", extra={
                    "pair": key,
                    "reliable": len(reliable),
                    "required": self.min_reliable_sources,
                    "median_price": str(median_price)
                })
            else:
                rate = sum(reliable, Decimal(0)) / len(reliable)

        self._report.data[key] = QueryStatus(
            time=datetime.utcnow(),
            prices=prices,
            deltas=deltas,
            valid=valid,
            reject_reason=reject_reason,
            errors=errors,
            last_price=last_prices
        )
        return rate

    async def disconnect(self) -> None:
        await sequence(self.sources, lambda source: source.disconnect())
