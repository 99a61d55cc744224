"""
Builders for providers, calculators and ready-to-start FX services.
"""

from typing import Dict, Iterable, List, Optional, Type

from .fx_service import FXService
from ..api.schemas import CurrencyPair
from ..calculators.robust_calculator import RobustCalculator
from ..calculators.simple_calculator import SimpleRateCalculator
from ..core.config import settings
from ..core.logging_config import create_logger
from ..providers.base import BaseRateProvider
from ..providers.coinmarketcap_provider import CoinMarketCapProvider
from ..providers.exchange_rates_api_provider import ExchangeRatesAPIProvider
from ..providers.open_exchange_provider import OpenExchangeProvider
from ..providers.yfinance_provider import YahooFXProvider

logger = create_logger(__name__)

PROVIDER_CLASSES: Dict[str, Type[BaseRateProvider]] = {
    'yahoo': YahooFXProvider,
    'openexchangerates': OpenExchangeProvider,
    'coinmarketcap': CoinMarketCapProvider,
    'exchangeratesapi': ExchangeRatesAPIProvider
}


def provider_factory(name: str) -> BaseRateProvider:
    """Build a provider by name, configured from settings. Unknown names get Yahoo."""
    key = (name or '').strip().lower()
    provider_class = PROVIDER_CLASSES.get(key)
    if provider_class is None:
        logger.warning("Unknown rate provider, falling back to yahoo", extra={"provider": name})
        provider_class = YahooFXProvider
    return provider_class()


def simple_fx_service_factory(
    provider: str = "yahoo",
    refresh_interval: Optional[float] = None,
    active_pairs: Optional[Iterable[CurrencyPair]] = None
) -> FXService:
    """An FX service fed by a single provider."""
    calculator = SimpleRateCalculator(provider_factory(provider))
    return FXService(
        calculator=calculator,
        refresh_interval=refresh_interval,
        active_pairs=active_pairs if active_pairs is not None else settings.get_active_pairs_list()
    )


def robust_fx_service_factory(
    provider_names: Iterable[str],
    refresh_interval: Optional[float] = None,
    active_pairs: Optional[Iterable[CurrencyPair]] = None,
    price_threshold: Optional[float] = None,
    delta_threshold: Optional[float] = None,
    min_reliable_sources: Optional[int] = None
) -> FXService:
    """An FX service that takes the consensus of several providers."""
    sources: List[BaseRateProvider] = [provider_factory(name) for name in provider_names]
    calculator = RobustCalculator(
        sources,
        price_threshold=price_threshold,
        delta_threshold=delta_threshold,
        min_reliable_sources=min_reliable_sources
    )
    return FXService(
        calculator=calculator,
        refresh_interval=refresh_interval,
        active_pairs=active_pairs if active_pairs is not None else settings.get_active_pairs_list()
    )


def build_fx_service_from_settings() -> FXService:
    """
    Build the application's service. A comma-separated ``default_provider``
    selects the robust calculator over those providers.
    """
    names = [name.strip() for name in settings.default_provider.split(',') if name.strip()]
    if len(names) > 1:
        return robust_fx_service_factory(names)
    return simple_fx_service_factory(names[0] if names else "yahoo")
