from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from payrail.core.models import PaymentIdentity, PaymentParams, Transaction
    from payrail.core.payment import Payment


class PaymentStore(ABC):
    """Port for payment, identity and ledger persistence.

    Contract:
    - Every write returns the complete resulting row
    - Every read goes to the store; nothing is cached
    - Returned entities are detached copies; mutating them does not affect stored state
    - Payments are returned without identities or transactions attached
    - Failures surface as PersistenceError

    Serialization of concurrent writers to the same payment is the caller's
    job (see LockProvider); update_transaction additionally refuses to touch
    a transaction that is already terminal.
    """

    @abstractmethod
    def upsert_payment(self, params: PaymentParams, now: datetime) -> Payment:
        """Insert a payment, or update the one sharing ``params.unique_ref``.

        An existing payment is only rewritten while still INITIATED; otherwise
        it is returned unchanged.
        """

    @abstractmethod
    def get_payment(self, payment_id: uuid.UUID) -> Optional[Payment]:
        """Return the payment row, or None if it does not exist."""

    @abstractmethod
    def get_payment_by_ref(self, unique_ref: str) -> Optional[Payment]:
        """Return the payment with this idempotency key, or None."""

    @abstractmethod
    def update_payment(self, payment: Payment) -> Payment:
        """Persist the mutable columns of an existing payment.

        Raises:
            NotFoundError: If the payment does not exist.
        """

    @abstractmethod
    def add_identity(self, identity: PaymentIdentity) -> PaymentIdentity:
        """Insert a payment identity."""

    @abstractmethod
    def list_identities(self, payment_id: uuid.UUID) -> List[PaymentIdentity]:
        """Return a payment's identities in attachment order."""

    @abstractmethod
    def insert_transaction(self, transaction: Transaction) -> Transaction:
        """Append a ledger entry."""

    @abstractmethod
    def update_transaction(self, transaction: Transaction) -> Transaction:
        """Persist a transaction's new state.

        Raises:
            NotFoundError: If the transaction does not exist.
            ValidationError: If the stored transaction is already terminal.
        """

    @abstractmethod
    def list_transactions(self, payment_id: uuid.UUID) -> List[Transaction]:
        """Return a payment's ledger entries oldest first."""

    @abstractmethod
    def find_transactions_by_external_ref(self, external_ref: str) -> List[Transaction]:
        """Return every ledger entry referencing a rail-issued id."""
