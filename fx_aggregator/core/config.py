"""
Configuration management for the FX Rate Aggregator Service.
Uses pydantic-settings for environment variable management.
"""

from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..api.schemas import CurrencyPair


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application metadata
    app_name: str = Field(default="FX Rate Aggregator")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8000)

    # Rate service
    refresh_interval: float = Field(default=300.0)  # 5 minutes
    active_pairs: str = Field(default="")
    default_provider: str = Field(default="yahoo")

    # API Keys for rate providers
    openexchangerates_api_key: Optional[str] = Field(default=None)
    coinmarketcap_api_key: Optional[str] = Field(default=None)
    exchangeratesapi_api_key: Optional[str] = Field(default=None)

    # Provider cache windows (in seconds)
    openexchangerates_cache_duration: float = Field(default=250.0)
    coinmarketcap_cache_duration: float = Field(default=300.0)
    exchangeratesapi_cache_duration: float = Field(default=300.0)

    # HTTP client
    http_timeout: float = Field(default=30.0)
    http_retry_count: int = Field(default=3)

    # Robust calculator defaults
    price_threshold: float = Field(default=0.05)
    delta_threshold: float = Field(default=0.01)
    min_reliable_sources: int = Field(default=1)

    # Redis snapshot cache
    redis_enabled: bool = Field(default=False)
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    redis_password: Optional[str] = Field(default=None)
    snapshot_ttl: int = Field(default=3600)

    # Logging configuration
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @field_validator('refresh_interval')
    @classmethod
    def validate_refresh_interval(cls, v: float) -> float:
        """Refresh interval must be positive."""
        if v <= 0:
            raise ValueError("refresh_interval must be positive")
        return v

    @field_validator('price_threshold', 'delta_threshold')
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        """Thresholds are fractions of the median price."""
        if not 0 < v <= 1:
            raise ValueError("thresholds must be in the range (0, 1]")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = {'json', 'text'}
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {', '.join(valid_formats)}")
        return v.lower()

    def get_active_pairs_list(self) -> List[CurrencyPair]:
        """Get active currency pairs as a list."""
        return [
            CurrencyPair.parse(pair)
            for pair in self.active_pairs.split(',')
            if pair.strip()
        ]

    def get_redis_url(self) -> str:
        """Get Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


# Global settings instance
settings = Settings()


class ProviderConfig:
    """Static configuration for rate providers."""

    OPEN_EXCHANGE_URL = "https://openexchangerates.org/api"
    COINMARKETCAP_URL = "https://pro-api.coinmarketcap.com/v1"
    EXCHANGE_RATES_API_URL = "https://api.exchangeratesapi.io"

    # Cache keys
    CACHE_KEYS = {
        'rates': 'fx:rates',
        'error_state': 'fx:error_state',
        'last_update': 'fx:last_update'
    }


provider_config = ProviderConfig()
