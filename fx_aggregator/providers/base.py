"""
Abstract base class for FX rate providers.
Defines the interface that all rate sources must implement, plus the shared
HTTP, catalogue and caching machinery they build on.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal, InvalidOperation
from functools import partial
from typing import Any, Dict, Optional, Tuple
import asyncio
import logging
import time

import httpx

from ..api.schemas import CurrencyPair, FXRate
from ..core.config import settings
from ..core.logging_config import create_logger


class ProviderError(Exception):
    """Base exception for provider errors."""

    def __init__(self, message: str, provider: str, pair: Optional[CurrencyPair] = None):
        self.message = message
        self.provider = provider
        self.pair = pair
        super().__init__(self.message)


class RateUnavailableError(ProviderError):
    """Exception raised when a provider has no usable rate for a pair."""
    pass


class RateLimitError(ProviderError):
    """Exception raised when provider rate limit is exceeded."""
    pass


class AuthenticationError(ProviderError):
    """Exception raised when provider authentication fails."""
    pass


class BaseRateProvider(ABC):
    """Abstract base class for FX rate sources."""

    def __init__(
        self,
        name: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        cache_duration: float = 0.0,
        retry_count: Optional[int] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.name = name
        self.api_key = api_key
        self.base_url = base_url
        self.client = client
        self.cache_duration = cache_duration
        self.retry_count = retry_count if retry_count is not None else settings.http_retry_count
        self.logger = logger or create_logger(__name__)
        self._owns_client = client is None
        self._pending: Dict[str, asyncio.Future] = {}
        self._catalogue: Optional[Any] = None
        self._catalogue_lock = asyncio.Lock()
        self._cache: Dict[str, Tuple[float, Any]] = {}

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.disconnect()

    async def connect(self) -> None:
        """Initialize HTTP client connection."""
        if self.client is None:
            timeout = httpx.Timeout(settings.http_timeout, connect=10.0)
            limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)

            self.client = httpx.AsyncClient(
                timeout=timeout,
                limits=limits,
                headers=self._get_default_headers(),
                follow_redirects=True
            )
            self._owns_client = True

            self.logger.debug("Connected to provider", extra={"provider": self.name})

    async def disconnect(self) -> None:
        """Close HTTP client connection, if this provider created it."""
        if self.client and self._owns_client:
            await self.client.aclose()
            self.client = None
            self.logger.debug("Disconnected from provider", extra={"provider": self.name})

    def _get_default_headers(self) -> Dict[str, str]:
        """Get default HTTP headers for requests."""
        return {
            'User-Agent': 'FX-Rate-Aggregator/1.0.0',
            'Accept': 'application/json'
        }

    def _get_auth_headers(self) -> Optional[Dict[str, str]]:
        """Get authentication headers for this provider."""
        return None

    async def _make_request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        """Make HTTP request with retries and error handling."""

        if not self.client:
            await self.connect()

        request_headers = self._get_default_headers()
        if headers:
            request_headers.update(headers)

        auth_headers = self._get_auth_headers()
        if auth_headers:
            request_headers.update(auth_headers)

        for attempt in range(self.retry_count):
            try:
                self.logger.debug("Making request to provider", extra={
                    "provider": self.name,
                    "method": method,
                    "url": url,
                    "attempt": attempt + 1
                })

                response = await self.client.request(
                    method=method,
                    url=url,
                    params=params,
                    headers=request_headers
                )

                if response.status_code == 429:
                    retry_after = int(response.headers.get('Retry-After', 60))
                    self.logger.warning("Rate limited by provider", extra={
                        "provider": self.name,
                        "retry_after": retry_after
                    })

                    if attempt < self.retry_count - 1:
                        await asyncio.sleep(min(retry_after, 60))  # Max 60 seconds
                        continue
                    raise RateLimitError(f"Rate limited by {self.name}", self.name)

                if response.status_code == 401:
                    raise AuthenticationError(f"Authentication failed for {self.name}", self.name)

                response.raise_for_status()

                try:
                    data = response.json()
                except ValueError as e:
                    raise ProviderError(f"Invalid JSON response from {self.name}: {str(e)}", self.name)

                self.logger.debug("Received response from provider", extra={
                    "provider": self.name,
                    "status_code": response.status_code,
                    "response_size": len(response.content)
                })
                return data

            except httpx.TimeoutException:
                self.logger.warning("Request timeout", extra={
                    "provider": self.name,
                    "attempt": attempt + 1,
                    "url": url
                })

                if attempt < self.retry_count - 1:
                    await asyncio.sleep(2 ** attempt)  # Exponential backoff
                    continue
                raise ProviderError(f"Request timeout for {self.name}", self.name)

            except httpx.HTTPError as e:
                self.logger.warning("HTTP error", extra={
                    "provider": self.name,
                    "error": str(e),
                    "attempt": attempt + 1
                })

                if attempt < self.retry_count - 1:
                    await asyncio.sleep(2 ** attempt)  # Exponential backoff
                    continue
                raise ProviderError(f"HTTP error for {self.name}: {str(e)}", self.name)

        raise ProviderError(f"Max retries exceeded for {self.name}", self.name)

    # Rate fetching

    async def fetch_current_rate(self, pair: CurrencyPair, allow_inverse: bool = False) -> FXRate:
        """
        Fetch the current rate for a currency pair.

        Support is not checked unless ``allow_inverse`` is set; in that case an
        unsupported pair is served as the reciprocal of its inverse when the
        inverse is supported.

        Args:
            pair: Currency pair to fetch
            allow_inverse: Check support first and fall back to the inverse pair

        Returns:
            FXRate with a finite rate

        Raises:
            RateUnavailableError: If no usable rate could be obtained
        """
        if pair.is_identity():
            return FXRate(
                from_currency=pair.from_currency,
                to_currency=pair.to_currency,
                time=datetime.utcnow(),
                rate=Decimal(1),
                change=Decimal(0)
            )

        if allow_inverse:
            try:
                supported = await self.supports_pair(pair)
                inverse_supported = not supported and await self.supports_pair(pair.inverse())
            except ProviderError as e:
                raise RateUnavailableError(e.message, self.name, pair) from e

            if not supported:
                if not inverse_supported:
                    raise RateUnavailableError(
                        f"Currency pair {pair} or its inverse is not supported",
                        self.name,
                        pair
                    )
                inverse = await self._get_rate(pair.inverse())
                if inverse.rate == 0:
                    raise RateUnavailableError(f"Zero inverse rate for {pair}", self.name, pair)
                return FXRate(
                    from_currency=pair.from_currency,
                    to_currency=pair.to_currency,
                    time=inverse.time,
                    rate=Decimal(1) / inverse.rate
                )

        return await self._get_rate(pair)

    async def _get_rate(self, pair: CurrencyPair) -> FXRate:
        """Return the in-flight download for this pair, or start a new one."""
        key = pair.as_string()
        pending = self._pending.get(key)
        if pending is None:
            self.logger.debug("Downloading current exchange rate", extra={
                "provider": self.name,
                "pair": key
            })
            pending = asyncio.ensure_future(self._download_checked(pair))
            self._pending[key] = pending
            pending.add_done_callback(partial(self._clear_pending, key))
        return await asyncio.shield(pending)

    def _clear_pending(self, key: str, future: asyncio.Future) -> None:
        if self._pending.get(key) is future:
            del self._pending[key]

    async def _download_checked(self, pair: CurrencyPair) -> FXRate:
        """Download a rate and normalise every failure into RateUnavailableError."""
        try:
            result = await self._download_current_rate(pair)
        except RateUnavailableError:
            raise
        except (ProviderError, httpx.HTTPError, ArithmeticError, LookupError, ValueError, TypeError, AttributeError) as e:
            self.logger.warning("Failed to download exchange rate", extra={
                "provider": self.name,
                "pair": pair.as_string(),
                "error": str(e)
            })
            raise RateUnavailableError(str(e), self.name, pair) from e

        if result is None or not result.has_usable_rate():
            raise RateUnavailableError(
                "We got a response, but the FX rate wasn't present",
                self.name,
                pair
            )
        return result

    def _create_rate(self, pair: CurrencyPair, value: Any, timestamp: Optional[datetime] = None) -> FXRate:
        """
        Create a standardized FXRate object.

        Args:
            pair: Currency pair
            value: Raw rate value (string or number)
            timestamp: Observation timestamp

        Returns:
            FXRate object

        Raises:
            RateUnavailableError: If the value is missing, unparseable or non-finite
        """
        rate = self._to_decimal(value, pair)
        return FXRate(
            from_currency=pair.from_currency,
            to_currency=pair.to_currency,
            time=timestamp or datetime.utcnow(),
            rate=rate
        )

    def _to_decimal(self, value: Any, pair: CurrencyPair) -> Decimal:
        if value is None or isinstance(value, bool):
            raise RateUnavailableError(f"No rate for {pair} in response", self.name, pair)
        try:
            # str() first so floats keep their shortest repr instead of binary expansion
            rate = value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise RateUnavailableError(f"Invalid rate {value!r} for {pair}", self.name, pair)
        if not rate.is_finite():
            raise RateUnavailableError(f"Non-finite rate for {pair}", self.name, pair)
        return rate

    # Supported currency catalogue

    async def _load_catalogue(self) -> Any:
        """
        Return the supported-currency catalogue, downloading it on first use.

        The catalogue is fetched at most once per instance; a failed download is
        not cached, so the next call retries.
        """
        if self._catalogue is not None:
            return self._catalogue
        async with self._catalogue_lock:
            if self._catalogue is None:
                catalogue = await self._download_catalogue()
                self._catalogue = catalogue
                self.logger.info("Loaded supported currency catalogue", extra={
                    "provider": self.name,
                    "count": len(catalogue)
                })
        return self._catalogue

    async def _download_catalogue(self) -> Any:
        """Download the supported-currency catalogue for this provider."""
        raise NotImplementedError(f"{self.name} has no currency catalogue")

    # Time-bounded result cache

    def _get_cached(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if time.monotonic() - stored_at >= self.cache_duration:
            del self._cache[key]
            return None
        return value

    def _set_cached(self, key: str, value: Any) -> None:
        if self.cache_duration > 0:
            self._cache[key] = (time.monotonic(), value)

    def clear_cache(self) -> None:
        """Clear the result cache, forcing the next download to hit the server."""
        self._cache.clear()

    @abstractmethod
    async def supports_pair(self, pair: CurrencyPair) -> bool:
        """
        Check if this provider can quote the given pair.

        Args:
            pair: Currency pair to check

        Returns:
            True if the pair is supported, False otherwise

        Raises:
            ProviderError: If the supported-currency catalogue could not be loaded
        """
        pass

    @abstractmethod
    async def _download_current_rate(self, pair: CurrencyPair) -> Optional[FXRate]:
        """
        Fetch the latest rate for a pair from the upstream service.

        Support is not checked here. Implementations raise RateUnavailableError
        (or let transport errors propagate) when no value is available.
        """
        pass
