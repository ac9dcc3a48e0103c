"""
Ledger entities and request parameters.

Transactions are immutable: every state change returns a new instance, and
a transaction that reached VERIFIED or CANCELED rejects further changes.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from payrail.core.enums import Currency, TransactionStatus, TransactionType
from payrail.core.exceptions import ValidationError


@dataclass(frozen=True)
class PaymentParams:
    """Parameters to create (or re-submit) a payment."""

    unique_ref: str
    total_amount: Decimal
    currency: Currency
    tag: str = ""
    description: str = ""
    meta: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class IdentityParams:
    """Parameters to attach a party to a payment."""

    identity_id: uuid.UUID
    account: str
    role_name: str = ""
    amount: Decimal = Decimal("0")
    meta: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class PaymentIdentity:
    """A payer or transfer recipient participating in a payment."""

    id: uuid.UUID
    payment_id: uuid.UUID
    identity_id: uuid.UUID
    account: str
    role_name: str
    allocated_amount: Decimal
    meta: Optional[Dict[str, Any]]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "identity_id": str(self.identity_id),
            "account": self.account,
            "role_name": self.role_name,
            "allocated_amount": self.allocated_amount,
            "meta": self.meta,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class Transaction:
    """
    One append-only settlement attempt.

    State machine:
        PENDING → VERIFIED (terminal)
        PENDING → CANCELED (terminal)
        PENDING → ACTION_REQUIRED → VERIFIED | CANCELED
    """

    id: uuid.UUID
    payment_id: uuid.UUID
    identity_id: uuid.UUID
    amount: Decimal
    created_at: datetime
    type: TransactionType = TransactionType.DEPOSIT
    tag: str = TransactionType.DEPOSIT.value
    external_ref: str = ""
    fee: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    status: TransactionStatus = TransactionStatus.PENDING
    meta: Dict[str, Any] = field(default_factory=dict)
    canceled_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _ensure_open(self, action: str) -> None:
        if self.is_terminal:
            raise ValidationError(
                f"Cannot {action} transaction {self.id}: already {self.status.value}"
            )

    def verify(self, now: datetime, external_ref: Optional[str], meta: Dict[str, Any]) -> Transaction:
        """Return the VERIFIED version of this transaction."""
        self._ensure_open("verify")
        return replace(
            self,
            status=TransactionStatus.VERIFIED,
            external_ref=external_ref or self.external_ref,
            meta=meta,
            verified_at=now,
        )

    def cancel(self, now: datetime, meta: Dict[str, Any]) -> Transaction:
        """Return the CANCELED version of this transaction."""
        self._ensure_open("cancel")
        return replace(self, status=TransactionStatus.CANCELED, meta=meta, canceled_at=now)

    def mark_action_required(self, external_ref: Optional[str], meta: Dict[str, Any]) -> Transaction:
        """Return the ACTION_REQUIRED version of this transaction."""
        self._ensure_open("mark action required on")
        return replace(
            self,
            status=TransactionStatus.ACTION_REQUIRED,
            external_ref=external_ref or self.external_ref,
            meta=meta,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "identity_id": str(self.identity_id),
            "external_ref": self.external_ref,
            "tag": self.tag,
            "type": self.type.value,
            "amount": self.amount,
            "fee": self.fee,
            "discount": self.discount,
            "status": self.status.value,
            "meta": self.meta,
            "canceled_at": self.canceled_at,
            "verified_at": self.verified_at,
            "created_at": self.created_at,
        }
