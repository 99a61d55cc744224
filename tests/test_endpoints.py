import asyncio
from decimal import Decimal

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from fx_aggregator.api import endpoints
from fx_aggregator.api.schemas import CurrencyPair, FXRate
from fx_aggregator.calculators.base import BaseRateCalculator
from fx_aggregator.calculators.robust_calculator import RobustCalculator
from fx_aggregator.calculators.simple_calculator import SimpleRateCalculator
from fx_aggregator.main import http_exception_handler
from fx_aggregator.providers.base import BaseRateProvider
from fx_aggregator.services.fx_service import FXService

EUR_USD = CurrencyPair.parse("EUR-USD")


class StaticProvider(BaseRateProvider):
    def __init__(self, name, prices):
        super().__init__(name=name)
        self.prices = prices

    async def supports_pair(self, pair):
        return pair.as_string() in self.prices

    async def _download_current_rate(self, pair):
        return self._create_rate(pair, self.prices.get(pair.as_string()))


class StaticCalculator(BaseRateCalculator):
    def __init__(self, prices):
        super().__init__()
        self.prices = prices

    async def calculate_rates_for(self, pairs):
        return [
            FXRate(
                from_currency=pair.from_currency,
                to_currency=pair.to_currency,
                rate=Decimal(str(self.prices[pair.as_string()]))
            ) if pair.as_string() in self.prices else None
            for pair in pairs
        ]


def build_client(service):
    app = FastAPI()
    app.include_router(endpoints.router)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.dependency_overrides[endpoints.get_fx_service] = lambda: service
    return TestClient(app)


@pytest.fixture
def service():
    service = FXService(StaticCalculator({"EUR-USD": "1.0875", "GBP-USD": "1.27"}), active_pairs=[EUR_USD])
    asyncio.run(service.calculate_rates())
    return service


def test_health_reports_service_state(service):
    with build_client(service) as client:
        response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "degraded"
    assert body["scheduled"] is False
    assert body["error_state"] is False
    assert body["tracked_pairs"] == 1
    assert body["last_update"] is not None


def test_get_rates(service):
    with build_client(service) as client:
        response = client.get("/v1/rates")

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["error_state"] is False
    assert Decimal(body["rates"]["EUR-USD"]["rate"]) == Decimal("1.0875")


def test_get_single_rate(service):
    with build_client(service) as client:
        found = client.get("/v1/rates/eur-usd")
        missing = client.get("/v1/rates/GBP-JPY")
        invalid = client.get("/v1/rates/EURUSD")

    assert found.status_code == 200
    assert found.json()["from_currency"] == "EUR"
    assert missing.status_code == 404
    assert missing.json()["error_code"] == "HTTP_404"
    assert invalid.status_code == 400


def test_add_and_remove_pairs(service):
    with build_client(service) as client:
        added = client.post("/v1/pairs", json={"from_currency": "gbp", "to_currency": "usd"})
        again = client.post("/v1/pairs", json={"from_currency": "GBP", "to_currency": "USD"})
        removed = client.delete("/v1/pairs/EUR-USD")
        removed_again = client.delete("/v1/pairs/EUR-USD")

    assert added.status_code == 201
    assert added.json()["from_currency"] == "GBP"
    assert again.status_code == 201
    assert removed.status_code == 200
    assert removed.json()["removed"] == "EUR-USD"
    assert removed_again.status_code == 404
    assert service.currency_pairs == [CurrencyPair.parse("GBP-USD")]


def test_refresh_interval_update(service):
    with build_client(service) as client:
        updated = client.put("/v1/refresh-interval", json={"seconds": 30})
        rejected = client.put("/v1/refresh-interval", json={"seconds": 0})

    assert updated.status_code == 200
    assert updated.json()["refresh_interval"] == 30
    assert rejected.status_code == 422
    assert service.refresh_interval == 30


def test_clear_error_state(service):
    service.subscribe(lambda rates: 1 / 0)
    asyncio.run(service.calculate_rates())
    assert service.is_in_error_state() is True

    with build_client(service) as client:
        response = client.post("/v1/error-state/clear")

    assert response.json()["error_state"] is False
    assert service.is_in_error_state() is False


def test_calculator_report_for_simple_calculator():
    provider = StaticProvider("Static", {"EUR-USD": 1.09})
    service = FXService(SimpleRateCalculator(provider), active_pairs=[EUR_USD])

    with build_client(service) as client:
        response = client.get("/v1/calculator/report")

    assert response.status_code == 200
    assert response.json()["calculator"] == "SimpleRateCalculator"
    assert response.json()["info"] == {"provider": "Static"}


def test_calculator_report_for_robust_calculator():
    sources = [StaticProvider("A", {"EUR-USD": 1.09}), StaticProvider("B", {"EUR-USD": 1.1})]
    service = FXService(RobustCalculator(sources, min_reliable_sources=2), active_pairs=[EUR_USD])
    asyncio.run(service.calculate_rates())

    with build_client(service) as client:
        response = client.get("/v1/calculator/report")

    info = response.json()["info"]
    assert info["sources"] == ["A", "B"]
    assert info["data"]["EUR-USD"]["valid"] == [True, True]
    assert info["data"]["EUR-USD"]["reject_reason"] == [0, 0]


def test_calculator_report_without_calculator():
    with build_client(FXService()) as client:
        response = client.get("/v1/calculator/report")

    assert response.status_code == 404


def test_service_unavailable_until_installed():
    app = FastAPI()
    app.include_router(endpoints.router)
    endpoints.set_fx_service(None)

    with TestClient(app) as client:
        response = client.get("/v1/rates")

    assert response.status_code == 503
