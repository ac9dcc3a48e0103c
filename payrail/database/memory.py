from __future__ import annotations

import copy
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from payrail.core.enums import PaymentStatus
from payrail.core.exceptions import NotFoundError, ValidationError
from payrail.core.models import PaymentIdentity, PaymentParams, Transaction
from payrail.core.payment import Payment
from payrail.database.store import PaymentStore


class InMemoryPaymentStore(PaymentStore):
    """In-memory payment store for tests and single-process use.

    Implementation notes:
    - Stores and returns deep copies to mimic database detachment
    - Payments are stored without identities, transactions or service binding
    - NOT thread-safe; relies on the LockProvider for serialization
    """

    def __init__(self) -> None:
        self._payments: Dict[uuid.UUID, Payment] = {}
        self._refs: Dict[str, uuid.UUID] = {}
        self._identities: Dict[uuid.UUID, List[PaymentIdentity]] = {}
        self._transactions: Dict[uuid.UUID, Transaction] = {}
        self._ledger_order: Dict[uuid.UUID, List[uuid.UUID]] = {}

    @staticmethod
    def _row(payment: Payment) -> Payment:
        return copy.deepcopy(replace(payment, identities=[], transactions=[], _service=None))

    def upsert_payment(self, params: PaymentParams, now: datetime) -> Payment:
        existing_id = self._refs.get(params.unique_ref)
        if existing_id is not None:
            existing = self._payments[existing_id]
            if existing.status == PaymentStatus.INITIATED:
                self._payments[existing_id] = replace(
                    existing,
                    tag=params.tag,
                    description=params.description,
                    total_amount=params.total_amount,
                    currency=params.currency,
                    meta=copy.deepcopy(params.meta),
                    updated_at=now,
                )
            return self._row(self._payments[existing_id])

        payment = Payment(
            id=uuid.uuid4(),
            unique_ref=params.unique_ref,
            total_amount=params.total_amount,
            currency=params.currency,
            tag=params.tag,
            description=params.description,
            meta=copy.deepcopy(params.meta),
            created_at=now,
            updated_at=now,
        )
        self._payments[payment.id] = payment
        self._refs[payment.unique_ref] = payment.id
        return self._row(payment)

    def get_payment(self, payment_id: uuid.UUID) -> Optional[Payment]:
        payment = self._payments.get(payment_id)
        if payment is None:
            return None
        return self._row(payment)

    def get_payment_by_ref(self, unique_ref: str) -> Optional[Payment]:
        payment_id = self._refs.get(unique_ref)
        if payment_id is None:
            return None
        return self.get_payment(payment_id)

    def update_payment(self, payment: Payment) -> Payment:
        if payment.id not in self._payments:
            raise NotFoundError(f"Payment not found: {payment.id}")
        self._payments[payment.id] = self._row(payment)
        return self._row(payment)

    def add_identity(self, identity: PaymentIdentity) -> PaymentIdentity:
        if identity.payment_id not in self._payments:
            raise NotFoundError(f"Payment not found: {identity.payment_id}")
        self._identities.setdefault(identity.payment_id, []).append(copy.deepcopy(identity))
        return copy.deepcopy(identity)

    def list_identities(self, payment_id: uuid.UUID) -> List[PaymentIdentity]:
        return copy.deepcopy(self._identities.get(payment_id, []))

    def insert_transaction(self, transaction: Transaction) -> Transaction:
        if transaction.payment_id not in self._payments:
            raise NotFoundError(f"Payment not found: {transaction.payment_id}")
        self._transactions[transaction.id] = copy.deepcopy(transaction)
        self._ledger_order.setdefault(transaction.payment_id, []).append(transaction.id)
        return copy.deepcopy(transaction)

    def update_transaction(self, transaction: Transaction) -> Transaction:
        stored = self._transactions.get(transaction.id)
        if stored is None:
            raise NotFoundError(f"Transaction not found: {transaction.id}")
        if stored.is_terminal:
            raise ValidationError(
                f"Transaction {transaction.id} is already {stored.status.value}"
            )
        self._transactions[transaction.id] = copy.deepcopy(transaction)
        return copy.deepcopy(transaction)

    def list_transactions(self, payment_id: uuid.UUID) -> List[Transaction]:
        return [
            copy.deepcopy(self._transactions[tx_id])
            for tx_id in self._ledger_order.get(payment_id, [])
        ]

    def find_transactions_by_external_ref(self, external_ref: str) -> List[Transaction]:
        return [
            copy.deepcopy(tx)
            for tx in self._transactions.values()
            if tx.external_ref == external_ref
        ]
