"""
Pytest configuration and fixtures.
"""
import threading
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from payrail.config import FiatServiceConfig
from payrail.core.amounts import to_minor_units
from payrail.core.clock import FixedClock
from payrail.core.enums import Currency
from payrail.core.locking import InMemoryLockProvider, NoOpLockProvider
from payrail.core.models import IdentityParams, PaymentParams
from payrail.core.payment import Payment
from payrail.core.service import PaymentService
from payrail.database.memory import InMemoryPaymentStore
from payrail.database.models import Base
from payrail.database.sql import SqlAlchemyPaymentStore
from payrail.integrations.crypto import CryptoLookup, CryptoSettlementAdapter
from payrail.integrations.fiat import (
    ChargeOutcome,
    FiatAdapter,
    FiatCharge,
    FiatChargeRequest,
    FiatConfirmation,
)
from payrail.integrations.registry import AdapterRegistry

TOKEN = "0xToken000000000000000000000000000000000001"
FIXED_NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O")
    config.addinivalue_line("markers", "integration: tests against a real database engine")
    config.addinivalue_line("markers", "race: concurrent access tests")


class FakeFiatAdapter(FiatAdapter):
    """Scriptable card rail."""

    def __init__(self, name: str = "stripe-main"):
        super().__init__(name)
        self.outcome = ChargeOutcome.CONFIRMED
        self.token: Optional[str] = None
        self.error: Optional[Exception] = None
        self.confirmed = True
        self.confirm_failed = False
        self.confirm_error: Optional[Exception] = None
        self.requests: List[FiatChargeRequest] = []
        self.continuations: List[str] = []

    def charge(self, request: FiatChargeRequest) -> FiatCharge:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        status = "requires_action" if self.outcome == ChargeOutcome.REQUIRES_ACTION else "succeeded"
        return FiatCharge(
            outcome=self.outcome,
            external_id="pi_123",
            amount_minor=to_minor_units(request.amount, request.currency),
            currency=request.currency.value.lower(),
            token=self.token,
            raw={"id": "pi_123", "status": status},
        )

    def confirm_continuation(self, token: str) -> FiatConfirmation:
        self.continuations.append(token)
        if self.confirm_error is not None:
            raise self.confirm_error
        if self.confirmed:
            status = "succeeded"
        elif self.confirm_failed:
            status = "requires_payment_method"
        else:
            status = "requires_action"
        return FiatConfirmation(
            confirmed=self.confirmed,
            external_id="pi_123",
            status=status,
            failed=self.confirm_failed,
            raw={"id": "pi_123", "status": status},
        )


class FakeCryptoAdapter(CryptoSettlementAdapter):
    """Crypto rail returning a scripted lookup result."""

    def __init__(self, tokens: List[str]):
        super().__init__([])
        self.tokens = {t.lower() for t in tokens}
        self.amount = Decimal("50")
        self.confirmed = True
        self.error: Optional[Exception] = None
        self.calls: List[tuple] = []

    def has_token(self, token_address: str) -> bool:
        return token_address.lower() in self.tokens

    def lookup(
        self,
        tx_hash: str,
        token_address: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CryptoLookup:
        self.calls.append((tx_hash, token_address, timeout, cancel_event))
        if self.error is not None:
            raise self.error
        return CryptoLookup(
            tx_hash=tx_hash,
            amount=self.amount,
            sender="0xsender",
            recipient="0xrecipient",
            confirmed=self.confirmed,
            token=token_address,
            date=FIXED_NOW,
            raw={"hash": tx_hash},
        )


@pytest.fixture
def clock() -> FixedClock:
    """Deterministic UTC clock."""
    return FixedClock(FIXED_NOW)


@pytest.fixture
def store() -> InMemoryPaymentStore:
    return InMemoryPaymentStore()


@pytest.fixture
def fiat() -> FakeFiatAdapter:
    return FakeFiatAdapter()


@pytest.fixture
def crypto() -> FakeCryptoAdapter:
    return FakeCryptoAdapter([TOKEN])


@pytest.fixture
def service(
    store: InMemoryPaymentStore,
    fiat: FakeFiatAdapter,
    crypto: FakeCryptoAdapter,
    clock: FixedClock,
) -> PaymentService:
    """Payment service over the in-memory store and fake rails."""
    registry: AdapterRegistry[FiatAdapter] = AdapterRegistry("fiat service")
    registry.register(fiat.name, fiat)
    return PaymentService(
        store=store,
        fiat_adapters=registry,
        crypto=crypto,
        locks=NoOpLockProvider(),
        clock=clock,
    )


@pytest.fixture
def threaded_service(
    store: InMemoryPaymentStore,
    fiat: FakeFiatAdapter,
    crypto: FakeCryptoAdapter,
    clock: FixedClock,
) -> PaymentService:
    """Payment service with real per-payment locks."""
    registry: AdapterRegistry[FiatAdapter] = AdapterRegistry("fiat service")
    registry.register(fiat.name, fiat)
    return PaymentService(
        store=store,
        fiat_adapters=registry,
        crypto=crypto,
        locks=InMemoryLockProvider(),
        clock=clock,
    )


@pytest.fixture
def fiat_payment(service: PaymentService) -> Payment:
    """USD 100 payment with a payer, bound to the fake Stripe service."""
    payment = service.create(PaymentParams("order-1", Decimal("100"), Currency.USD))
    payment.add_identity(
        IdentityParams(identity_id=uuid.uuid4(), account="cus_payer", role_name="payer")
    )
    payment.bind_fiat_rail("stripe-main")
    return payment


@pytest.fixture
def crypto_payment(service: PaymentService) -> Payment:
    """Payment of 50 with a payer, bound to the test token."""
    payment = service.create(PaymentParams("order-c", Decimal("50"), Currency.USD))
    payment.add_identity(
        IdentityParams(identity_id=uuid.uuid4(), account="0xpayer", role_name="payer")
    )
    payment.bind_crypto_rail(TOKEN, Decimal("1.5"))
    return payment


@pytest.fixture
def stripe_config() -> FiatServiceConfig:
    return FiatServiceConfig(name="stripe-main", api_key="sk_test_fake_key_for_testing")


@pytest.fixture
def sql_store() -> Iterator[SqlAlchemyPaymentStore]:
    """SQLAlchemy store over a shared in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(engine, expire_on_commit=False, autoflush=False)
    yield SqlAlchemyPaymentStore(factory)
    engine.dispose()
