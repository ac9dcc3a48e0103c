"""
Entry point for creating and loading payments.

PaymentService holds the collaborators a Payment needs (store, ledger,
reconciliation controller, adapters, lock provider, clock) and attaches
itself to every Payment it returns.
"""
import uuid
from dataclasses import replace
from typing import Optional

import structlog

from payrail.config import Settings, get_settings
from payrail.core.amounts import to_decimal
from payrail.core.clock import Clock, SystemClock
from payrail.core.enums import Currency
from payrail.core.exceptions import NotFoundError, ValidationError
from payrail.core.ledger import TransactionLedger
from payrail.core.locking import InMemoryLockProvider, LockProvider
from payrail.core.models import PaymentParams
from payrail.core.payment import Payment
from payrail.core.reconciliation import ReconciliationController
from payrail.database.connection import get_session_factory, init_db
from payrail.database.sql import SqlAlchemyPaymentStore
from payrail.database.store import PaymentStore
from payrail.integrations.crypto import CryptoSettlementAdapter
from payrail.integrations.fiat import FiatAdapter
from payrail.integrations.registry import AdapterRegistry, build_fiat_registry

logger = structlog.get_logger(__name__)


class PaymentService:
    """
    Creates, fetches and wires payments.

    Example:
        service = PaymentService.from_settings()
        payment = service.create(PaymentParams("order-1", Decimal("100"), Currency.USD))
        payment.add_identity(IdentityParams(identity_id=user_id, account="cus_123"))
        payment.bind_fiat_rail("stripe-main")
        payment.deposit()
    """

    def __init__(
        self,
        store: PaymentStore,
        fiat_adapters: Optional[AdapterRegistry[FiatAdapter]] = None,
        crypto: Optional[CryptoSettlementAdapter] = None,
        locks: Optional[LockProvider] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize payment service.

        Args:
            store: Persistence for payments, identities and transactions
            fiat_adapters: Configured fiat services by name
            crypto: Configured chains, or None when no crypto rail is offered
            locks: Per-payment lock provider (in-process locks by default)
            clock: Timestamp source (system UTC clock by default)
        """
        self.store = store
        self.fiat_adapters = fiat_adapters or AdapterRegistry("fiat service")
        self.crypto = crypto
        self.locks = locks or InMemoryLockProvider()
        self.clock = clock or SystemClock()
        self.ledger = TransactionLedger(store, self.clock)
        self.controller = ReconciliationController(
            self.ledger, store, self.fiat_adapters, crypto, self.clock
        )

        logger.info(
            "payment_service_initialized",
            fiat_services=list(self.fiat_adapters),
            crypto_enabled=crypto is not None,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        store: Optional[PaymentStore] = None,
        locks: Optional[LockProvider] = None,
    ) -> "PaymentService":
        """Build a service from configuration, backed by the SQL store by default."""
        settings = settings or get_settings()
        if store is None:
            init_db(settings)
            store = SqlAlchemyPaymentStore(get_session_factory(settings))
        crypto = CryptoSettlementAdapter.from_settings(settings) if settings.chains else None
        return cls(
            store=store,
            fiat_adapters=build_fiat_registry(settings),
            crypto=crypto,
            locks=locks,
        )

    def _hydrate(self, payment: Payment) -> Payment:
        payment.identities = self.store.list_identities(payment.id)
        payment.transactions = self.store.list_transactions(payment.id)
        payment._service = self
        return payment

    def create(self, params: PaymentParams) -> Payment:
        """
        Create a payment, or return the existing one with the same unique_ref.

        Re-submitting a ref updates the payment's details while it is still
        INITIATED; afterwards the stored payment is returned unchanged.

        Raises:
            ValidationError: Missing ref, negative amount or unsupported currency
            PersistenceError: The store rejected the write
        """
        if not params.unique_ref:
            raise ValidationError("unique_ref is required")
        amount = to_decimal(params.total_amount)
        if amount < 0:
            raise ValidationError("Total amount must not be negative")
        try:
            currency = Currency(params.currency)
        except ValueError as e:
            raise ValidationError(f"Unsupported currency: {params.currency}") from e

        normalized = replace(params, total_amount=amount, currency=currency)
        with self.locks.acquire(f"ref:{params.unique_ref}"):
            row = self.store.upsert_payment(normalized, self.clock.now())

        logger.info(
            "payment_created",
            payment_id=str(row.id),
            unique_ref=row.unique_ref,
            amount=str(row.total_amount),
            currency=row.currency.value,
            status=row.status.value,
        )
        return self._hydrate(row)

    def fetch(self, payment_id: uuid.UUID) -> Payment:
        """
        Load a payment with its identities and transactions.

        Raises:
            NotFoundError: If no payment has this id
        """
        row = self.store.get_payment(payment_id)
        if row is None:
            raise NotFoundError(f"Payment not found: {payment_id}")
        return self._hydrate(row)

    def fetch_by_ref(self, unique_ref: str) -> Payment:
        """
        Load a payment by its idempotency key.

        Raises:
            NotFoundError: If no payment has this ref
        """
        row = self.store.get_payment_by_ref(unique_ref)
        if row is None:
            raise NotFoundError(f"Payment not found: {unique_ref}")
        return self._hydrate(row)
