"""
Abstract base class for FX rate calculators.
A calculator turns a batch of currency pairs into a batch of rates for one update.
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional
import logging

from ..api.schemas import CurrencyPair, FXRate
from ..core.logging_config import create_logger


class BaseRateCalculator(ABC):
    """Abstract base class for rate calculators."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or create_logger(__name__)

    @abstractmethod
    async def calculate_rates_for(self, pairs: List[CurrencyPair]) -> List[Optional[FXRate]]:
        """
        Calculate the most recent rate for each of the given pairs.

        Args:
            pairs: Currency pairs to calculate, in order

        Returns:
            One entry per pair, in the same order. An entry is None when no rate
            could be determined for that pair; the other rates are still valid.
        """
        pass

    def get_last_request_info(self) -> Any:
        """Diagnostics about the most recent calculation."""
        return {}

    async def disconnect(self) -> None:
        """Release network resources held by the underlying providers."""
        pass
