"""
FastAPI endpoints for the FX Rate Aggregator Service.
Serves the latest rates table and lets operators manage tracked pairs.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException
from fastapi.encoders import jsonable_encoder

from ..api.schemas import (
    CurrencyPair, FXRate, HealthResponse, PairRequest, RatesResponse, RefreshIntervalRequest
)
from ..calculators.base import BaseRateCalculator
from ..core.config import settings
from ..core.logging_config import create_logger
from ..providers.base import BaseRateProvider
from ..services.fx_service import FXService

logger = create_logger(__name__)

# Create API router
router = APIRouter()

# Service instance installed by the application lifespan
_fx_service: Optional[FXService] = None


def set_fx_service(service: Optional[FXService]) -> None:
    global _fx_service
    _fx_service = service


def get_fx_service() -> FXService:
    """Dependency returning the running FX service."""
    if _fx_service is None:
        raise HTTPException(status_code=503, detail="FX service is not running")
    return _fx_service


def _parse_pair(value: str) -> CurrencyPair:
    try:
        return CurrencyPair.parse(value)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid currency pair: {value}. Expected the form FROM-TO"
        )


@router.get("/health", response_model=HealthResponse)
async def health_check(service: FXService = Depends(get_fx_service)):
    """
    Health check endpoint.
    Reports whether the refresh timer is armed and whether the last update failed.
    """
    error_state = service.is_in_error_state()
    scheduled = service.is_scheduled
    status = "healthy" if scheduled and not error_state else "degraded"

    return HealthResponse(
        status=status,
        version=settings.app_version,
        error_state=error_state,
        scheduled=scheduled,
        refresh_interval=service.refresh_interval,
        tracked_pairs=len(service.currency_pairs),
        last_update=service.last_update
    )


@router.get("/v1/rates", response_model=RatesResponse)
async def get_rates(service: FXService = Depends(get_fx_service)):
    """
    Get the latest rate for every tracked pair.

    Pairs that have not been priced yet are returned with a null rate.
    """
    rates = service.rates
    logger.info("Rates request received", extra={"pairs": len(rates)})
    return RatesResponse(
        rates=rates,
        total=len(rates),
        error_state=service.is_in_error_state()
    )


@router.get("/v1/rates/{pair}", response_model=FXRate)
async def get_rate(pair: str, service: FXService = Depends(get_fx_service)):
    """Get the latest rate for a single pair, e.g. ``EUR-USD``."""
    currency_pair = _parse_pair(pair)
    rate = service.rates.get(currency_pair.as_string())
    if rate is None:
        raise HTTPException(
            status_code=404,
            detail=f"Currency pair is not tracked: {currency_pair}"
        )
    return rate


@router.post("/v1/pairs", response_model=FXRate, status_code=201)
async def add_pair(request: PairRequest, service: FXService = Depends(get_fx_service)):
    """Start tracking a pair. Adding a pair that is already tracked changes nothing."""
    try:
        currency_pair = request.to_pair()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    service.add_currency_pair(currency_pair)
    logger.info("Pair tracking requested", extra={"pair": currency_pair.as_string()})
    return service.rates[currency_pair.as_string()]


@router.delete("/v1/pairs/{pair}")
async def remove_pair(pair: str, service: FXService = Depends(get_fx_service)):
    """Stop tracking a pair."""
    currency_pair = _parse_pair(pair)
    if not service.remove_pair(currency_pair):
        raise HTTPException(
            status_code=404,
            detail=f"Currency pair is not tracked: {currency_pair}"
        )
    return {
        "removed": currency_pair.as_string(),
        "total": len(service.currency_pairs),
        "timestamp": datetime.utcnow()
    }


@router.put("/v1/refresh-interval")
async def update_refresh_interval(
    request: RefreshIntervalRequest,
    service: FXService = Depends(get_fx_service)
):
    """Change how often rates are refreshed; a running timer is re-armed."""
    service.set_refresh_interval(request.seconds)
    return {
        "refresh_interval": service.refresh_interval,
        "scheduled": service.is_scheduled,
        "timestamp": datetime.utcnow()
    }


@router.post("/v1/error-state/clear")
async def clear_error_state(service: FXService = Depends(get_fx_service)):
    """Reset the error flag after an operator has reviewed the failure."""
    service.clear_error_state()
    logger.info("Error state cleared")
    return {
        "error_state": service.is_in_error_state(),
        "timestamp": datetime.utcnow()
    }


@router.get("/v1/calculator/report")
async def get_calculator_report(service: FXService = Depends(get_fx_service)):
    """Diagnostics about the calculator's most recent update."""
    calculator = service.calculator
    if calculator is None:
        raise HTTPException(status_code=404, detail="No rate calculator is configured")

    info: Any = calculator.get_last_request_info()
    report: Dict[str, Any] = {
        "calculator": type(calculator).__name__,
        "info": jsonable_encoder(info, custom_encoder={
            BaseRateCalculator: lambda c: type(c).__name__,
            BaseRateProvider: lambda p: p.name
        }),
        "timestamp": datetime.utcnow()
    }
    return report
