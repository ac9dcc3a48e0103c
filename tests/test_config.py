"""
Unit tests for settings, adapter registries and service wiring.
"""
import logging

import pytest
import structlog
from pydantic import ValidationError as PydanticValidationError

from payrail.config import ChainConfig, FiatServiceConfig, Settings, TokenConfig
from payrail.core.enums import NetworkType
from payrail.core.exceptions import NotFoundError, ValidationError
from payrail.core.service import PaymentService
from payrail.database import close_db
from payrail.database.memory import InMemoryPaymentStore
from payrail.database.sql import SqlAlchemyPaymentStore
from payrail.integrations.registry import AdapterRegistry, build_fiat_registry
from payrail.integrations.stripe_client import StripeFiatAdapter
from payrail.monitoring import get_logger, payment_context, setup_logging
from payrail.monitoring.logging import redact_secrets


class TestSettings:
    """Test suite for Settings."""

    @pytest.mark.unit
    def test_defaults(self) -> None:
        """Test default configuration values."""
        settings = Settings()

        assert settings.confirmation_depth == 10
        assert settings.confirmation_poll_attempts == 20
        assert settings.log_level == "INFO"
        assert not settings.is_production

    @pytest.mark.unit
    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test PAYRAIL_ prefixed environment variables."""
        monkeypatch.setenv("PAYRAIL_LOG_LEVEL", "debug")
        monkeypatch.setenv("PAYRAIL_APP_ENV", "Production")
        monkeypatch.setenv(
            "PAYRAIL_FIAT_SERVICES", '[{"name": "stripe-main", "api_key": "sk_live_abc"}]'
        )

        settings = Settings()

        assert settings.log_level == "DEBUG"
        assert settings.is_production
        assert settings.fiat_services[0].name == "stripe-main"
        assert not settings.fiat_services[0].is_test_mode

    @pytest.mark.unit
    def test_rejects_invalid_values(self) -> None:
        """Test validation of log level and Stripe key format."""
        with pytest.raises(PydanticValidationError):
            Settings(log_level="LOUD")
        with pytest.raises(PydanticValidationError):
            FiatServiceConfig(name="stripe-main", api_key="pk_test_public")

    @pytest.mark.unit
    def test_chain_config(self) -> None:
        """Test chain and token configuration."""
        chain = ChainConfig(
            name="ethereum",
            type="EVM",
            explorer="https://api.etherscan.example/api",
            tokens=[{"symbol": "USDT", "address": "0xabc", "decimals": 6}],
        )

        assert chain.type == NetworkType.EVM
        assert chain.tokens[0] == TokenConfig(symbol="USDT", address="0xabc", decimals=6)
        assert chain.api_key.get_secret_value() == ""


class TestAdapterRegistry:
    """Test suite for AdapterRegistry."""

    @pytest.mark.unit
    def test_register_and_get(self) -> None:
        """Test name lookup."""
        registry: AdapterRegistry[str] = AdapterRegistry("fiat service")
        registry.register("a", "adapter-a")

        assert registry.get("a") == "adapter-a"
        assert "a" in registry
        assert list(registry) == ["a"]
        assert len(registry) == 1

    @pytest.mark.unit
    def test_duplicates_and_unknown_names(self) -> None:
        """Test duplicate registration and missing names."""
        registry: AdapterRegistry[str] = AdapterRegistry("fiat service")
        registry.register("a", "adapter-a")

        with pytest.raises(ValidationError, match="already registered"):
            registry.register("a", "other")
        with pytest.raises(NotFoundError, match="Unknown fiat service: b"):
            registry.get("b")

    @pytest.mark.unit
    def test_build_fiat_registry(self, stripe_config: FiatServiceConfig) -> None:
        """Test one Stripe adapter per configured service."""
        settings = Settings(fiat_services=[stripe_config], circuit_breaker_failure_threshold=7)

        registry = build_fiat_registry(settings)

        adapter = registry.get("stripe-main")
        assert isinstance(adapter, StripeFiatAdapter)
        assert adapter.circuit_breaker.failure_threshold == 7
        assert adapter.circuit_breaker.rail == "FIAT"


class TestServiceWiring:
    """Test suite for PaymentService.from_settings."""

    @pytest.mark.unit
    def test_from_settings_with_injected_store(self, stripe_config: FiatServiceConfig) -> None:
        """Test the configured rails are wired without a crypto adapter."""
        store = InMemoryPaymentStore()

        service = PaymentService.from_settings(
            Settings(fiat_services=[stripe_config]), store=store
        )

        assert service.store is store
        assert "stripe-main" in service.fiat_adapters
        assert service.crypto is None

    @pytest.mark.integration
    def test_from_settings_creates_sql_store(self) -> None:
        """Test the default store is SQL and its tables are created."""
        chain = ChainConfig(
            name="ethereum",
            type=NetworkType.EVM,
            explorer="https://api.etherscan.example/api",
            tokens=[TokenConfig(address="0xabc")],
        )
        try:
            service = PaymentService.from_settings(
                Settings(database_url="sqlite://", chains=[chain])
            )

            assert isinstance(service.store, SqlAlchemyPaymentStore)
            assert service.crypto.has_token("0xABC")
            with pytest.raises(NotFoundError):
                service.fetch_by_ref("missing")
        finally:
            close_db()


class TestLogging:
    """Test suite for logging setup."""

    @pytest.mark.unit
    def test_setup_logging_sets_level(self) -> None:
        """Test the root logger follows the configured level."""
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        try:
            setup_logging(Settings(log_level="WARNING"))

            assert logging.getLogger().level == logging.WARNING
            assert logging.getLogger("httpx").level == logging.WARNING
            get_logger("payrail.test").warning("logging_smoke_test", payment_id="p1")
        finally:
            structlog.reset_defaults()
            root.handlers[:] = handlers
            root.setLevel(level)

    @pytest.mark.unit
    def test_redact_secrets(self) -> None:
        """Test continuation tokens and keys are masked."""
        event = redact_secrets(
            None, "info", {"event": "x", "client_secret": "pi_1_secret_2", "api_key": "", "rail": "FIAT"}
        )

        assert event["client_secret"] == "[redacted]"
        assert event["api_key"] == ""
        assert event["rail"] == "FIAT"

    @pytest.mark.unit
    def test_payment_context_binds_payment_id(self) -> None:
        """Test the payment id is visible to nested events and unbound afterwards."""
        with payment_context("p-1", rail="FIAT"):
            bound = structlog.contextvars.get_contextvars()
            assert bound == {"payment_id": "p-1", "rail": "FIAT"}

        assert "payment_id" not in structlog.contextvars.get_contextvars()
