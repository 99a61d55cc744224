import asyncio
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest

from fx_aggregator.api.schemas import CurrencyPair
from fx_aggregator.providers.base import RateUnavailableError
from fx_aggregator.providers.coinmarketcap_provider import CoinMarketCapProvider
from fx_aggregator.providers.crypto_provider import CryptoProvider
from fx_aggregator.providers.exchange_rates_api_provider import ExchangeRatesAPIProvider
from fx_aggregator.providers.open_exchange_provider import OpenExchangeProvider
from fx_aggregator.providers import yfinance_provider
from fx_aggregator.providers.yfinance_provider import YahooFXProvider

EUR_USD = CurrencyPair(from_currency="EUR", to_currency="USD")
EUR_GBP = CurrencyPair(from_currency="EUR", to_currency="GBP")


class RecordingTransport:
    """Routes requests by path and remembers what was asked."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(handler):
            return handler(request)
        return httpx.Response(200, json=handler)

    def paths(self):
        return [request.url.path for request in self.requests]


def mock_client(transport: RecordingTransport) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(transport))


class FakeExchange:
    owner = "TestExchange"

    def __init__(self, prices, fail_products=False, delay=0.0):
        self.prices = prices
        self.fail_products = fail_products
        self.delay = delay
        self.product_calls = 0
        self.price_calls = []

    async def load_products(self):
        self.product_calls += 1
        if self.fail_products:
            raise ConnectionError("exchange offline")
        return [SimpleNamespace(id=product) for product in self.prices]

    async def load_mid_market_price(self, product):
        self.price_calls.append(product)
        if self.delay:
            await asyncio.sleep(self.delay)
        if product not in self.prices:
            raise KeyError(product)
        return self.prices[product]


# Open Exchange Rates

def open_exchange_routes():
    return {
        "/api/currencies.json": {"EUR": "Euro", "USD": "US Dollar", "GBP": "British Pound"},
        "/api/latest.json": {"timestamp": 1700000000, "base": "EUR", "rates": {"USD": 1.1, "GBP": 0.87}},
    }


def test_open_exchange_caches_rates_per_base_currency():
    transport = RecordingTransport(open_exchange_routes())

    async def run():
        provider = OpenExchangeProvider(api_key="test-key", client=mock_client(transport), retry_count=1)
        usd = await provider.fetch_current_rate(EUR_USD)
        gbp = await provider.fetch_current_rate(EUR_GBP)
        return usd, gbp

    usd, gbp = asyncio.run(run())

    assert usd.rate == Decimal("1.1")
    assert gbp.rate == Decimal("0.87")
    assert usd.time.year == 2023
    assert transport.paths() == ["/api/latest.json"]
    assert transport.requests[0].url.params["base"] == "EUR"
    assert transport.requests[0].url.params["app_id"] == "test-key"


def test_open_exchange_without_cache_downloads_every_time():
    transport = RecordingTransport(open_exchange_routes())

    async def run():
        provider = OpenExchangeProvider(
            api_key="test-key", client=mock_client(transport), cache_duration=0, retry_count=1
        )
        await provider.fetch_current_rate(EUR_USD)
        await provider.fetch_current_rate(EUR_GBP)

    asyncio.run(run())
    assert transport.paths() == ["/api/latest.json", "/api/latest.json"]


def test_open_exchange_catalogue_is_downloaded_once():
    transport = RecordingTransport(open_exchange_routes())

    async def run():
        provider = OpenExchangeProvider(api_key="test-key", client=mock_client(transport), retry_count=1)
        supported = await provider.supports_pair(EUR_USD)
        unsupported = await provider.supports_pair(CurrencyPair(from_currency="EUR", to_currency="XYZ"))
        return supported, unsupported

    supported, unsupported = asyncio.run(run())
    assert supported is True
    assert unsupported is False
    assert transport.paths() == ["/api/currencies.json"]


def test_open_exchange_missing_quote_is_unavailable():
    transport = RecordingTransport(open_exchange_routes())

    async def run():
        provider = OpenExchangeProvider(api_key="test-key", client=mock_client(transport), retry_count=1)
        await provider.fetch_current_rate(CurrencyPair(from_currency="EUR", to_currency="JPY"))

    with pytest.raises(RateUnavailableError):
        asyncio.run(run())


def test_server_error_becomes_rate_unavailable():
    transport = RecordingTransport({
        "/api/latest.json": lambda request: httpx.Response(500, json={"error": "boom"})
    })

    async def run():
        provider = OpenExchangeProvider(api_key="test-key", client=mock_client(transport), retry_count=1)
        await provider.fetch_current_rate(EUR_USD)

    with pytest.raises(RateUnavailableError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.provider == "Open Exchange Rates"


def test_identity_pair_needs_no_request():
    transport = RecordingTransport({})

    async def run():
        provider = OpenExchangeProvider(api_key="test-key", client=mock_client(transport), retry_count=1)
        return await provider.fetch_current_rate(CurrencyPair(from_currency="USD", to_currency="USD"))

    rate = asyncio.run(run())
    assert rate.rate == Decimal(1)
    assert rate.change == Decimal(0)
    assert transport.requests == []


# CoinMarketCap

def test_coinmarketcap_quote_and_catalogue():
    transport = RecordingTransport({
        "/v1/cryptocurrency/map": {"data": [
            {"id": 1, "symbol": "BTC"},
            {"id": 1027, "symbol": "ETH"},
            {"id": 9999, "symbol": "btc"},
        ]},
        "/v1/cryptocurrency/quotes/latest": {"data": {"BTC": {
            "id": 1,
            "quote": {"USD": {"price": 43250.5, "last_updated": "2024-01-02T03:04:05.000Z"}}
        }}},
    })
    btc_usd = CurrencyPair(from_currency="BTC", to_currency="USD")

    async def run():
        provider = CoinMarketCapProvider(api_key="cmc-key", client=mock_client(transport), retry_count=1)
        supported = await provider.supports_pair(btc_usd)
        bad_quote = await provider.supports_pair(CurrencyPair(from_currency="BTC", to_currency="NOK"))
        rate = await provider.fetch_current_rate(btc_usd)
        cached = await provider.fetch_current_rate(btc_usd)
        return provider, supported, bad_quote, rate, cached

    provider, supported, bad_quote, rate, cached = asyncio.run(run())

    assert supported is True
    assert bad_quote is False
    assert provider._catalogue == {"BTC": 1, "ETH": 1027}
    assert rate.rate == Decimal("43250.5")
    assert rate.time.hour == 3
    assert cached.rate == rate.rate
    assert transport.paths() == ["/v1/cryptocurrency/map", "/v1/cryptocurrency/quotes/latest"]
    quote_request = transport.requests[1]
    assert quote_request.headers["X-CMC_PRO_API_KEY"] == "cmc-key"
    assert quote_request.url.params["symbol"] == "BTC"
    assert quote_request.url.params["convert"] == "USD"


def test_coinmarketcap_unknown_symbol_is_unavailable():
    transport = RecordingTransport({
        "/v1/cryptocurrency/quotes/latest": {"data": {}},
    })

    async def run():
        provider = CoinMarketCapProvider(api_key="cmc-key", client=mock_client(transport), retry_count=1)
        await provider.fetch_current_rate(CurrencyPair(from_currency="NOPE", to_currency="USD"))

    with pytest.raises(RateUnavailableError):
        asyncio.run(run())


@pytest.mark.parametrize("coin_data", [
    {"quote": ["not", "a", "dict"]},
    {"quote": {"USD": ["not", "a", "dict"]}},
    {"quote": {"EUR": {"price": 1.0}}},
    "BTC",
])
def test_coinmarketcap_malformed_quote_is_unavailable(coin_data):
    transport = RecordingTransport({
        "/v1/cryptocurrency/quotes/latest": {"data": {"BTC": coin_data}},
    })

    async def run():
        provider = CoinMarketCapProvider(api_key="cmc-key", client=mock_client(transport), retry_count=1)
        await provider.fetch_current_rate(CurrencyPair(from_currency="BTC", to_currency="USD"))

    with pytest.raises(RateUnavailableError):
        asyncio.run(run())


def test_coinmarketcap_ignores_unparseable_update_time():
    transport = RecordingTransport({
        "/v1/cryptocurrency/quotes/latest": {"data": {"BTC": {
            "quote": {"USD": {"price": 43000, "last_updated": 1704164645}}
        }}},
    })

    async def run():
        provider = CoinMarketCapProvider(api_key="cmc-key", client=mock_client(transport), retry_count=1)
        return await provider.fetch_current_rate(CurrencyPair(from_currency="BTC", to_currency="USD"))

    rate = asyncio.run(run())
    assert rate.rate == Decimal(43000)
    assert rate.time is not None


# Exchange Rates API

def test_exchange_rates_api_uses_access_key_and_date():
    transport = RecordingTransport({
        "/latest": {"base": "EUR", "date": "2024-03-15", "rates": {"USD": 1.0892, "GBP": 0.8551}},
    })

    async def run():
        provider = ExchangeRatesAPIProvider(api_key="era-key", client=mock_client(transport), retry_count=1)
        supported = await provider.supports_pair(EUR_GBP)
        rate = await provider.fetch_current_rate(EUR_USD)
        return supported, rate

    supported, rate = asyncio.run(run())

    assert supported is True
    assert rate.rate == Decimal("1.0892")
    assert rate.time.date().isoformat() == "2024-03-15"
    params = transport.requests[-1].url.params
    assert params["access_key"] == "era-key"
    assert params["base"] == "EUR"
    assert params["format"] == "json"


# Exchange-backed crypto provider

def test_crypto_provider_serves_mid_market_price():
    exchange = FakeExchange({"BTC-USD": "40000.00"})

    async def run():
        provider = CryptoProvider(exchange)
        return provider, await provider.supports_pair(CurrencyPair.parse("BTC-USD")), \
            await provider.fetch_current_rate(CurrencyPair.parse("BTC-USD"))

    provider, supported, rate = asyncio.run(run())
    assert provider.name == "CryptoProvider (TestExchange)"
    assert supported is True
    assert rate.rate == Decimal("40000.00")


def test_crypto_provider_failed_product_load_is_retried():
    exchange = FakeExchange({"BTC-USD": 40000}, fail_products=True)

    async def run():
        provider = CryptoProvider(exchange)
        first = await provider.supports_pair(CurrencyPair.parse("BTC-USD"))
        exchange.fail_products = False
        second = await provider.supports_pair(CurrencyPair.parse("BTC-USD"))
        return first, second

    first, second = asyncio.run(run())
    assert first is False
    assert second is True
    assert exchange.product_calls == 2


def test_inverse_pair_is_reciprocal_of_supported_pair():
    exchange = FakeExchange({"BTC-USD": 40000})

    async def run():
        provider = CryptoProvider(exchange)
        return await provider.fetch_current_rate(CurrencyPair.parse("USD-BTC"), allow_inverse=True)

    rate = asyncio.run(run())
    assert rate.from_currency == "USD"
    assert rate.to_currency == "BTC"
    assert rate.rate == Decimal("0.000025")
    assert exchange.price_calls == ["BTC-USD"]


def test_inverse_not_attempted_without_support():
    exchange = FakeExchange({"BTC-USD": 40000})

    async def run():
        provider = CryptoProvider(exchange)
        await provider.fetch_current_rate(CurrencyPair.parse("ETH-EUR"), allow_inverse=True)

    with pytest.raises(RateUnavailableError):
        asyncio.run(run())
    assert exchange.price_calls == []


def test_concurrent_requests_for_a_pair_share_one_download():
    exchange = FakeExchange({"BTC-USD": 40000}, delay=0.01)

    async def run():
        provider = CryptoProvider(exchange)
        pair = CurrencyPair.parse("BTC-USD")
        return await asyncio.gather(provider.fetch_current_rate(pair), provider.fetch_current_rate(pair))

    first, second = asyncio.run(run())
    assert first.rate == second.rate == Decimal(40000)
    assert exchange.price_calls == ["BTC-USD"]


def test_exchange_failure_is_rate_unavailable():
    exchange = FakeExchange({})

    async def run():
        provider = CryptoProvider(exchange)
        await provider.fetch_current_rate(CurrencyPair.parse("BTC-USD"))

    with pytest.raises(RateUnavailableError):
        asyncio.run(run())


# Yahoo Finance

class FakeTicker:
    def __init__(self, symbol):
        self.symbol = symbol
        self.fast_info = SimpleNamespace(last_price=1.0875 if symbol == "EURUSD=X" else None)

    def history(self, period):
        raise RuntimeError("no history for " + self.symbol)


def test_yahoo_provider_reads_last_price(monkeypatch):
    monkeypatch.setattr(yfinance_provider.yf, "Ticker", FakeTicker)

    async def run():
        provider = YahooFXProvider()
        try:
            supported = await provider.supports_pair(EUR_USD)
            unsupported = await provider.supports_pair(CurrencyPair.parse("BTC-USD"))
            rate = await provider.fetch_current_rate(EUR_USD)
        finally:
            await provider.disconnect()
        return supported, unsupported, rate

    supported, unsupported, rate = asyncio.run(run())
    assert supported is True
    assert unsupported is False
    assert rate.rate == Decimal("1.0875")


def test_yahoo_provider_failure_is_rate_unavailable(monkeypatch):
    monkeypatch.setattr(yfinance_provider.yf, "Ticker", FakeTicker)

    async def run():
        provider = YahooFXProvider()
        try:
            await provider.fetch_current_rate(EUR_GBP)
        finally:
            await provider.disconnect()

    with pytest.raises(RateUnavailableError):
        asyncio.run(run())


def test_yahoo_provider_can_fetch_again_after_disconnect(monkeypatch):
    monkeypatch.setattr(yfinance_provider.yf, "Ticker", FakeTicker)

    async def run():
        provider = YahooFXProvider()
        first = await provider.fetch_current_rate(EUR_USD)
        await provider.disconnect()
        try:
            second = await provider.fetch_current_rate(EUR_USD)
        finally:
            await provider.disconnect()
        return first, second

    first, second = asyncio.run(run())
    assert first.rate == second.rate == Decimal("1.0875")
