"""
FX rate service for the FX Rate Aggregator.

The service owns the set of tracked currency pairs and the table of latest
rates. On a fixed schedule it asks its rate calculator for every tracked pair,
merges the answers into the table and publishes a snapshot to subscribers.

Rate sources may go offline or return nonsense. When an update fails, or the
calculator cannot produce a rate for some pair, the previous rates are kept and
the error flag is raised; clients inspect ``is_in_error_state()`` to decide,
for example, whether to suspend trading.
"""

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Set

from ..api.schemas import CurrencyPair, FXRate, FXRates
from ..calculators.base import BaseRateCalculator
from ..core.config import settings
from ..core.logging_config import create_logger

RateUpdateCallback = Callable[[FXRates], Any]


class RateBatchMismatchError(Exception):
    """Raised when a calculator returns a batch that does not match the request."""
    pass


class FXService:
    """Service that keeps a table of near-realtime FX rates up to date."""

    def __init__(
        self,
        calculator: Optional[BaseRateCalculator] = None,
        refresh_interval: Optional[float] = None,
        active_pairs: Optional[Iterable[CurrencyPair]] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.logger = logger or create_logger(__name__)
        self._calculator = calculator
        self._refresh_interval = refresh_interval or settings.refresh_interval
        self._currency_pairs: List[CurrencyPair] = []
        self._rates: FXRates = {}
        self._error_state = False
        self._subscribers: List[RateUpdateCallback] = []
        self._timer: Optional[asyncio.Task] = None
        self._running_ticks: Set[asyncio.Task] = set()
        self._started = False
        self._last_update: Optional[datetime] = None
        self.set_active_pairs(active_pairs or [])

    # Configuration

    @property
    def calculator(self) -> Optional[BaseRateCalculator]:
        return self._calculator

    def set_calculator(self, calculator: Optional[BaseRateCalculator]) -> "FXService":
        """Replace the rate calculator. Returns ``self`` so setters can be chained."""
        self._calculator = calculator
        return self

    @property
    def refresh_interval(self) -> float:
        return self._refresh_interval

    def set_refresh_interval(self, seconds: float) -> "FXService":
        """
        Change the polling interval. If the service is running the current
        timer is cancelled before the new one is armed.
        """
        if seconds <= 0:
            raise ValueError("refresh interval must be positive")
        self._refresh_interval = seconds
        if self._started:
            self._disarm()
            self._arm()
        self.logger.info("Refresh interval updated", extra={"interval": seconds})
        return self

    # Tracked pairs

    @property
    def currency_pairs(self) -> List[CurrencyPair]:
        return list(self._currency_pairs)

    def set_active_pairs(self, pairs: Iterable[CurrencyPair]) -> "FXService":
        """Replace all tracked pairs with the given ones."""
        pairs = list(pairs)
        for pair in self.currency_pairs:
            if pair not in pairs:
                self.remove_pair(pair)
        for pair in pairs:
            self.add_currency_pair(pair)
        return self

    def add_currency_pair(self, pair: CurrencyPair) -> "FXService":
        """
        Start tracking a pair. A placeholder entry is added to the rates table
        at once and an extra update is triggered. Adding a tracked pair is a no-op.
        """
        if pair in self._currency_pairs:
            return self
        self._currency_pairs.append(pair)
        self._rates[pair.as_string()] = FXRate.placeholder(pair)
        self.logger.info("Currency pair added", extra={"pair": pair.as_string()})
        self._spawn_tick()
        return self

    def remove_pair(self, pair: CurrencyPair) -> bool:
        """Stop tracking a pair. Returns False if it was not tracked."""
        if pair not in self._currency_pairs:
            return False
        self._currency_pairs.remove(pair)
        self._rates.pop(pair.as_string(), None)
        self.logger.info("Currency pair removed", extra={"pair": pair.as_string()})
        return True

    def index_of(self, pair: CurrencyPair) -> int:
        """Position of the pair in the tracked list, or -1."""
        try:
            return self._currency_pairs.index(pair)
        except ValueError:
            return -1

    # State

    @property
    def rates(self) -> FXRates:
        """Snapshot of the latest rate for every tracked pair."""
        return {key: rate.model_copy() for key, rate in self._rates.items()}

    @property
    def last_update(self) -> Optional[datetime]:
        return self._last_update

    @property
    def is_scheduled(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def is_in_error_state(self) -> bool:
        """True when the most recent update was not fully trustworthy."""
        return self._error_state

    def clear_error_state(self) -> None:
        """Reset the error flag. No other action is taken."""
        self._error_state = False

    # Subscriptions

    def subscribe(self, callback: RateUpdateCallback) -> None:
        """Register a callback (plain or async) that receives every rates snapshot."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: RateUpdateCallback) -> bool:
        if callback not in self._subscribers:
            return False
        self._subscribers.remove(callback)
        return True

    # Scheduling

    async def start(self) -> None:
        """Arm the refresh timer and run a first update straight away."""
        if self._started:
            return
        self._started = True
        self._arm()
        self._spawn_tick()
        self.logger.info("FX service started", extra={
            "interval": self._refresh_interval,
            "pairs": [pair.as_string() for pair in self._currency_pairs]
        })

    async def stop(self) -> None:
        """Disarm the timer and wait for in-flight updates to finish."""
        self._started = False
        timer = self._timer
        self._disarm()
        if timer is not None:
            await asyncio.gather(timer, return_exceptions=True)
        if self._running_ticks:
            await asyncio.gather(*self._running_ticks, return_exceptions=True)
        self.logger.info("FX service stopped")

    def _arm(self) -> None:
        self._timer = asyncio.get_running_loop().create_task(self._run_schedule(self._refresh_interval))

    def _disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _run_schedule(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self._spawn_tick()

    def _spawn_tick(self) -> None:
        """Start an update without waiting for it. Updates may overlap; the last to finish wins."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no event loop yet; start() runs the first update
            return
        task = loop.create_task(self.calculate_rates())
        self._running_ticks.add(task)
        task.add_done_callback(self._running_ticks.discard)

    # Updates

    async def calculate_rates(self) -> Optional[FXRates]:
        """
        Run one update: ask the calculator for every tracked pair and merge the results.

        Returns:
            The rates snapshot that was published, or None when no calculator is set
        """
        calculator = self._calculator
        if calculator is None:
            return None

        pairs = list(self._currency_pairs)
        try:
            results = await calculator.calculate_rates_for(pairs)
        except Exception as e:
            self.logger.warning("An error occurred fetching latest exchange rates", extra={
                "error": str(e)
            })
            self._error_state = True
        else:
            try:
                self._merge_rates(pairs, results)
            except RateBatchMismatchError as e:
                self.logger.error("The FX calculator returned an invalid batch", extra={
                    "error": str(e)
                })
                self._error_state = True
            except Exception as e:
                self.logger.error("Failed to merge the latest exchange rates", extra={
                    "error": str(e)
                })
                self._error_state = True

        snapshot = self.rates
        await self._publish(snapshot)
        return snapshot

    def _merge_rates(self, pairs: List[CurrencyPair], results: Any) -> None:
        if not isinstance(results, list):
            raise RateBatchMismatchError(f"Expected a list of rates, got {type(results).__name__}")
        if len(results) != len(pairs):
            raise RateBatchMismatchError(f"Requested {len(pairs)} rates but received {len(results)}")
        for pair, rate in zip(pairs, results):
            if rate is None:
                continue
            if not isinstance(rate, FXRate):
                raise RateBatchMismatchError(
                    f"Expected an FX rate for {pair} but received {type(rate).__name__}"
                )
            if rate.from_currency != pair.from_currency:
                raise RateBatchMismatchError(
                    f"The provided exchange rate has a base currency of {rate.from_currency} "
                    f"instead of {pair.from_currency}"
                )
            if rate.to_currency != pair.to_currency:
                raise RateBatchMismatchError(
                    f"The provided exchange rate has a quote currency of {rate.to_currency} "
                    f"instead of {pair.to_currency}"
                )

        missing = []
        for pair, rate in zip(pairs, results):
            key = pair.as_string()
            if rate is None or rate.rate is None:
                missing.append(key)
                continue
            old_rate = self._rates.get(key)
            if old_rate is None:
                # removed while the update was in flight
                continue
            change = None
            if old_rate.rate and rate.rate:
                change = (rate.rate - old_rate.rate) / old_rate.rate * 100
            self._rates[key] = rate.model_copy(update={'change': change})

        self._last_update = datetime.utcnow()
        if missing:
            self.logger.warning("The FX calculator returned no rate for some pairs", extra={
                "pairs": missing
            })
            self._error_state = True
        else:
            self._error_state = False

    async def _publish(self, snapshot: FXRates) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error("A subscriber has caused an FX update failure", extra={
                    "subscriber": getattr(callback, '__qualname__', repr(callback)),
                    "error": str(e)
                })
                self._error_state = True
