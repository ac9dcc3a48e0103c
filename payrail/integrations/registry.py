"""Name-keyed registries of configured settlement adapters."""
from typing import Callable, Dict, Generic, Iterator, TypeVar

import structlog

from payrail.config import FiatServiceConfig, Settings
from payrail.core.enums import FiatService
from payrail.core.exceptions import NotFoundError, ValidationError
from payrail.integrations.circuit_breaker import CircuitBreaker
from payrail.integrations.fiat import FiatAdapter
from payrail.integrations.stripe_client import RAIL as FIAT_RAIL
from payrail.integrations.stripe_client import StripeFiatAdapter, counts_against_service

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class AdapterRegistry(Generic[T]):
    """Adapters of one kind keyed by their configured name."""

    def __init__(self, kind: str):
        self.kind = kind
        self._adapters: Dict[str, T] = {}

    def register(self, name: str, adapter: T) -> None:
        if name in self._adapters:
            raise ValidationError(f"{self.kind} '{name}' is already registered")
        self._adapters[name] = adapter
        logger.info("adapter_registered", kind=self.kind, name=name)

    def get(self, name: str) -> T:
        try:
            return self._adapters[name]
        except KeyError as e:
            raise NotFoundError(f"Unknown {self.kind}: {name}") from e

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    def __iter__(self) -> Iterator[str]:
        return iter(self._adapters)

    def __len__(self) -> int:
        return len(self._adapters)


def _stripe_factory(config: FiatServiceConfig, settings: Settings) -> FiatAdapter:
    breaker = CircuitBreaker(
        config.name,
        failure_threshold=settings.circuit_breaker_failure_threshold,
        timeout=settings.circuit_breaker_timeout,
        rail=FIAT_RAIL,
        is_failure=counts_against_service,
    )
    return StripeFiatAdapter(config, circuit_breaker=breaker)


# Processor type -> adapter factory
FIAT_SERVICE_TYPES: Dict[FiatService, Callable[[FiatServiceConfig, Settings], FiatAdapter]] = {
    FiatService.STRIPE: _stripe_factory,
}


def build_fiat_registry(settings: Settings) -> AdapterRegistry[FiatAdapter]:
    """Instantiate one adapter per configured fiat service."""
    registry: AdapterRegistry[FiatAdapter] = AdapterRegistry("fiat service")
    for config in settings.fiat_services:
        registry.register(config.name, FIAT_SERVICE_TYPES[config.service](config, settings))
    return registry
