"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from payrail.core.enums import FiatService, NetworkMode, NetworkType


class FiatServiceConfig(BaseModel):
    """Credentials and identity of one configured card processor."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Service name payments bind to (e.g. 'stripe-main')")
    service: FiatService = Field(default=FiatService.STRIPE, description="Processor type")
    api_key: SecretStr = Field(..., description="Secret API key (sk_test_... / sk_live_...)")
    api_version: Optional[str] = Field(default=None, description="Pinned processor API version")

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: SecretStr) -> SecretStr:
        """Validate that a Stripe secret key starts with sk_test_ or sk_live_."""
        key = v.get_secret_value()
        if not key.startswith("sk_test_") and not key.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.api_key.get_secret_value().startswith("sk_test_")


class TokenConfig(BaseModel):
    """A token accepted on a chain."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    symbol: str = ""
    address: str = Field(default="", description="Token contract address or asset unit")
    decimals: int = Field(default=18, ge=0, le=36)


class ChainConfig(BaseModel):
    """A blockchain network and the explorer used to read it."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: NetworkType
    mode: NetworkMode = NetworkMode.MAINNET
    explorer: str = Field(..., description="Explorer / indexer base URL")
    contract_address: str = Field(default="", description="Account whose transfers are listed")
    deposit_address: Optional[str] = Field(
        default=None, description="If set, only transfers to this address are accepted"
    )
    api_key: SecretStr = Field(default=SecretStr(""), description="Explorer API key / project id")
    tokens: List[TokenConfig] = Field(default_factory=list)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Configuration
    app_name: str = Field(default="payrail", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Database Configuration
    database_url: str = Field(default="sqlite:///payrail.db", description="SQLAlchemy URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max overflow connections")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Rails
    fiat_services: List[FiatServiceConfig] = Field(default_factory=list)
    chains: List[ChainConfig] = Field(default_factory=list)

    # Crypto confirmation polling
    confirmation_depth: int = Field(
        default=10, ge=0, description="Blocks required before an EVM transfer is final"
    )
    confirmation_poll_attempts: int = Field(default=20, ge=1, description="Max lookup attempts")
    confirmation_poll_interval: float = Field(
        default=1.0, ge=0, description="Delay between lookup attempts (seconds)"
    )
    http_timeout: float = Field(default=10.0, gt=0, description="Explorer HTTP timeout (seconds)")

    # Circuit breaker
    circuit_breaker_failure_threshold: int = Field(default=5, ge=1)
    circuit_breaker_timeout: int = Field(
        default=60, ge=0, description="Seconds before a half-open probe is allowed"
    )

    model_config = SettingsConfigDict(
        env_prefix="PAYRAIL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
