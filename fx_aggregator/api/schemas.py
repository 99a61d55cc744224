"""
Pydantic schemas for the FX Rate Aggregator Service.
Defines currency pairs, rate observations, calculator diagnostics and API payloads.
"""

from datetime import datetime
from decimal import Decimal
from enum import IntEnum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class CurrencyPair(BaseModel):
    """An ordered (from, to) pair of currency codes. Immutable and hashable."""

    model_config = ConfigDict(frozen=True)

    from_currency: str = Field(..., description="Base currency code")
    to_currency: str = Field(..., description="Quote currency code")

    @field_validator('from_currency', 'to_currency')
    @classmethod
    def validate_code(cls, v: str) -> str:
        """Validate and normalize currency code."""
        if not v or not v.strip():
            raise ValueError("Currency code cannot be empty")
        return v.strip().upper()

    @classmethod
    def parse(cls, value: str) -> "CurrencyPair":
        """Parse the canonical ``FROM-TO`` form."""
        parts = value.strip().split('-')
        if len(parts) != 2:
            raise ValueError(f"Invalid currency pair: {value!r}")
        return cls(from_currency=parts[0], to_currency=parts[1])

    def as_string(self) -> str:
        return f"{self.from_currency}-{self.to_currency}"

    def inverse(self) -> "CurrencyPair":
        return CurrencyPair(from_currency=self.to_currency, to_currency=self.from_currency)

    def is_identity(self) -> bool:
        return self.from_currency == self.to_currency

    def __str__(self) -> str:
        return self.as_string()


class FXRate(BaseModel):
    """
    A rate observation for one currency pair.

    ``rate`` and ``change`` are decimals; either may be ``None`` when no value
    is available yet. ``change`` is the percentage move against the previous
    stored rate for the same pair.
    """
    from_currency: str = Field(..., description="Base currency code")
    to_currency: str = Field(..., description="Quote currency code")
    time: Optional[datetime] = Field(None, description="Observation timestamp")
    rate: Optional[Decimal] = Field(None, description="Exchange rate")
    change: Optional[Decimal] = Field(None, description="Percentage change since the previous rate")

    @property
    def pair(self) -> CurrencyPair:
        return CurrencyPair(from_currency=self.from_currency, to_currency=self.to_currency)

    def has_usable_rate(self) -> bool:
        """True when the rate is present and finite."""
        return self.rate is not None and self.rate.is_finite()

    @classmethod
    def placeholder(cls, pair: CurrencyPair) -> "FXRate":
        """An entry for a tracked pair that has no rate yet."""
        return cls(from_currency=pair.from_currency, to_currency=pair.to_currency)


class RejectReason(IntEnum):
    """Why the robust calculator discarded a source for a pair."""
    NONE = 0
    NO_CURRENT_PRICE = 1
    PRICE_DEVIATION = 2
    PRICE_CHANGE_DEVIATION = 3


class QueryStatus(BaseModel):
    """Per-pair diagnostics from the last robust calculation, one slot per source."""
    time: datetime = Field(default_factory=datetime.utcnow)
    prices: List[Optional[Decimal]] = Field(default_factory=list)
    deltas: List[Optional[Decimal]] = Field(default_factory=list)
    valid: List[bool] = Field(default_factory=list)
    reject_reason: List[RejectReason] = Field(default_factory=list)
    errors: List[Optional[str]] = Field(default_factory=list)
    last_price: List[Optional[Decimal]] = Field(default_factory=list)


class RobustCalculatorReport(BaseModel):
    """Diagnostic report kept by a robust calculator."""
    sources: List[str] = Field(default_factory=list)
    data: Dict[str, QueryStatus] = Field(default_factory=dict)


# API payloads

class PairRequest(BaseModel):
    """Model for adding a tracked currency pair."""
    from_currency: str = Field(..., min_length=1, description="Base currency code")
    to_currency: str = Field(..., min_length=1, description="Quote currency code")

    def to_pair(self) -> CurrencyPair:
        return CurrencyPair(from_currency=self.from_currency, to_currency=self.to_currency)


class RefreshIntervalRequest(BaseModel):
    """Model for changing the polling interval."""
    seconds: float = Field(..., gt=0, description="Refresh interval in seconds")


class RatesResponse(BaseModel):
    """Model for the rates snapshot response."""
    rates: Dict[str, FXRate] = Field(..., description="Latest rate per pair")
    total: int = Field(..., description="Number of tracked pairs")
    error_state: bool = Field(..., description="Whether the last update failed")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Response timestamp")


class HealthResponse(BaseModel):
    """Model for health check response."""
    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")
    error_state: bool = Field(..., description="Whether the last update failed")
    scheduled: bool = Field(..., description="Whether the refresh timer is armed")
    refresh_interval: float = Field(..., description="Refresh interval in seconds")
    tracked_pairs: int = Field(..., description="Number of tracked pairs")
    last_update: Optional[datetime] = Field(None, description="Last completed update")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Health check timestamp")


class ErrorResponse(BaseModel):
    """Model for error responses."""
    error: str = Field(..., description="Error message")
    error_code: str = Field(..., description="Error code")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Error timestamp")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


# Type aliases for convenience
FXRates = Dict[str, FXRate]
