"""
Append-only transaction ledger.

Every settlement attempt is recorded as a new PENDING row. The ledger moves a
row to exactly one terminal state (VERIFIED or CANCELED), optionally passing
through ACTION_REQUIRED while a step-up authentication is outstanding.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from payrail.core.clock import Clock
from payrail.core.enums import TransactionType
from payrail.core.models import Transaction
from payrail.database.store import PaymentStore

logger = structlog.get_logger(__name__)


class TransactionLedger:
    """
    Writes ledger entries through the payment store.

    State changes go through the immutable Transaction entity, so a terminal
    transaction rejects every further mutation before the store is touched.
    """

    def __init__(self, store: PaymentStore, clock: Clock):
        self.store = store
        self.clock = clock

    def create(
        self,
        payment_id: uuid.UUID,
        identity_id: uuid.UUID,
        amount: Decimal,
        fee: Decimal = Decimal("0"),
        discount: Decimal = Decimal("0"),
        external_ref: str = "",
        type: TransactionType = TransactionType.DEPOSIT,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """
        Insert a PENDING transaction.

        Args:
            payment_id: Owning payment
            identity_id: Payment identity the attempt is made for
            amount: Amount in major units
            fee: Platform fee retained from the amount
            discount: Discount applied to the amount
            external_ref: Rail-issued id, if already known (chain tx hash)
            type: DEPOSIT or PAYOUT
            meta: Request snapshot

        Returns:
            Transaction: The persisted row
        """
        transaction = Transaction(
            id=uuid.uuid4(),
            payment_id=payment_id,
            identity_id=identity_id,
            amount=amount,
            created_at=self.clock.now(),
            type=type,
            tag=type.value,
            external_ref=external_ref,
            fee=fee,
            discount=discount,
            meta=dict(meta or {}),
        )
        saved = self.store.insert_transaction(transaction)

        logger.info(
            "transaction_created",
            payment_id=str(payment_id),
            transaction_id=str(saved.id),
            amount=str(amount),
            fee=str(fee),
            external_ref=external_ref or None,
        )
        return saved

    def verify(
        self,
        transaction: Transaction,
        external_ref: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Mark a transaction VERIFIED and persist it."""
        verified = transaction.verify(
            self.clock.now(), external_ref, meta if meta is not None else transaction.meta
        )
        saved = self.store.update_transaction(verified)

        logger.info(
            "transaction_verified",
            payment_id=str(saved.payment_id),
            transaction_id=str(saved.id),
            external_ref=saved.external_ref,
        )
        return saved

    def cancel(self, transaction: Transaction, meta: Optional[Dict[str, Any]] = None) -> Transaction:
        """Mark a transaction CANCELED and persist it."""
        canceled = transaction.cancel(
            self.clock.now(), meta if meta is not None else transaction.meta
        )
        saved = self.store.update_transaction(canceled)

        logger.warning(
            "transaction_canceled",
            payment_id=str(saved.payment_id),
            transaction_id=str(saved.id),
            external_ref=saved.external_ref or None,
        )
        return saved

    def mark_action_required(
        self,
        transaction: Transaction,
        external_ref: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Park a transaction until the payer completes step-up authentication."""
        parked = transaction.mark_action_required(
            external_ref, meta if meta is not None else transaction.meta
        )
        saved = self.store.update_transaction(parked)

        logger.info(
            "transaction_action_required",
            payment_id=str(saved.payment_id),
            transaction_id=str(saved.id),
            external_ref=saved.external_ref,
        )
        return saved

    def history(self, payment_id: uuid.UUID) -> List[Transaction]:
        """Return a payment's transactions oldest first."""
        return self.store.list_transactions(payment_id)
