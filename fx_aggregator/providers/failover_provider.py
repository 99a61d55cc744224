"""
Failover rate provider.
Wraps an ordered list of providers and serves the first usable answer.
"""

from typing import List, Optional

from .base import BaseRateProvider, RateUnavailableError
from ..api.schemas import CurrencyPair, FXRate
from ..core.concurrency import first_success, sequence


class FailoverProvider(BaseRateProvider):
    """Rate provider backed by several redundant providers, in priority order."""

    def __init__(
        self,
        providers: List[BaseRateProvider],
        name: str = "Failover Provider",
        allow_inverse: bool = False,
        **kwargs
    ):
        super().__init__(name=name, **kwargs)
        self.providers = list(providers)
        self.allow_inverse = allow_inverse

    async def connect(self) -> None:
        await sequence(self.providers, lambda provider: provider.connect())

    async def disconnect(self) -> None:
        await sequence(self.providers, lambda provider: provider.disconnect())

    async def supports_pair(self, pair: CurrencyPair) -> bool:
        """The first provider that supports the pair wins; failing providers are skipped."""
        async def check(provider: BaseRateProvider) -> Optional[bool]:
            return True if await provider.supports_pair(pair) else None

        return bool(await first_success(self.providers, check))

    async def _download_current_rate(self, pair: CurrencyPair) -> FXRate:
        async def attempt(provider: BaseRateProvider) -> Optional[FXRate]:
            result = await provider.fetch_current_rate(pair, allow_inverse=self.allow_inverse)
            return result if result is not None and result.has_usable_rate() else None

        result = await first_success(self.providers, attempt)
        if result is None:
            raise RateUnavailableError(
                f"None of the providers could offer a rate for {pair}",
                self.name,
                pair
            )
        return result
