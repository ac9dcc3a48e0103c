"""
Payment aggregate.

A Payment owns its identities and its transaction ledger and exposes the
lifecycle operations callers drive:

1. Create (PaymentService.create, idempotent by unique_ref)
2. Attach identities: the payer first, optionally a transfer destination
3. Bind a rail exactly once (fiat service or crypto token)
4. Deposit (fiat) / ConfirmDeposit (crypto)
5. ConfirmPayment after a fiat step-up authentication

Every mutating operation holds the payment's lock and reloads the stored
state before validating, so concurrent attempts on one payment serialize.
"""
from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Union

import structlog

from payrail.core.amounts import to_decimal
from payrail.core.enums import (
    SETTLED_STATUSES,
    Currency,
    PaymentStatus,
    PaymentType,
    TransactionStatus,
)
from payrail.core.exceptions import NotFoundError, PayrailError, ValidationError
from payrail.core.models import IdentityParams, PaymentIdentity, Transaction
from payrail.integrations.fiat import FiatChargeRequest, Transfer
from payrail.monitoring.logging import payment_context

if TYPE_CHECKING:
    from payrail.core.service import PaymentService

logger = structlog.get_logger(__name__)

# Columns reloaded from the store; everything else is attached state.
_ROW_FIELDS = (
    "unique_ref",
    "total_amount",
    "currency",
    "tag",
    "description",
    "status",
    "type",
    "fiat_service_name",
    "crypto_currency",
    "crypto_currency_rate",
    "transaction_status",
    "client_secret",
    "meta",
    "created_at",
    "updated_at",
)


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


@dataclass
class Payment:
    """A unit of money owed, settled over one fiat or crypto rail."""

    id: uuid.UUID
    unique_ref: str
    total_amount: Decimal
    currency: Currency
    tag: str = ""
    description: str = ""
    status: PaymentStatus = PaymentStatus.INITIATED
    type: Optional[PaymentType] = None
    fiat_service_name: Optional[str] = None
    crypto_currency: Optional[str] = None
    crypto_currency_rate: Optional[Decimal] = None
    transaction_status: Optional[TransactionStatus] = None
    client_secret: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    identities: List[PaymentIdentity] = field(default_factory=list)
    transactions: List[Transaction] = field(default_factory=list)
    _service: Optional[PaymentService] = field(default=None, repr=False, compare=False)

    # Attached state

    @property
    def service(self) -> PaymentService:
        if self._service is None:
            raise PayrailError(f"Payment {self.id} is not attached to a PaymentService")
        return self._service

    @property
    def payer(self) -> Optional[PaymentIdentity]:
        return self.identities[0] if self.identities else None

    @property
    def last_transaction(self) -> Optional[Transaction]:
        return self.transactions[-1] if self.transactions else None

    def record_transaction(self, transaction: Transaction) -> None:
        """Replace (or append) a transaction in the in-memory history."""
        for i, existing in enumerate(self.transactions):
            if existing.id == transaction.id:
                self.transactions[i] = transaction
                return
        self.transactions.append(transaction)

    @contextmanager
    def _locked(self) -> Iterator[PaymentService]:
        service = self.service
        with service.locks.acquire(f"payment:{self.id}"), payment_context(self.id):
            self._refresh(service)
            yield service

    def _refresh(self, service: PaymentService) -> None:
        row = service.store.get_payment(self.id)
        if row is None:
            raise NotFoundError(f"Payment not found: {self.id}")
        for name in _ROW_FIELDS:
            setattr(self, name, getattr(row, name))
        self.identities = service.store.list_identities(self.id)
        self.transactions = service.store.list_transactions(self.id)

    def _save(self, service: PaymentService) -> None:
        self.updated_at = service.clock.now()
        service.store.update_payment(self)

    def _unrecorded_deposit(self) -> Optional[Transaction]:
        """A VERIFIED last attempt the payment row does not reflect yet."""
        last = self.last_transaction
        if (
            last is not None
            and last.status == TransactionStatus.VERIFIED
            and self.status not in SETTLED_STATUSES
        ):
            return last
        return None

    # Identities

    def add_identity(self, params: IdentityParams) -> PaymentIdentity:
        """
        Attach a party to the payment.

        The first identity is the payer. The second is the transfer
        destination and may not be allocated more than the total amount.

        Raises:
            ValidationError: If the payment is settled or the allocation is invalid
        """
        amount = to_decimal(params.amount)
        if amount < 0:
            raise ValidationError("Allocated amount must not be negative")

        with self._locked() as service:
            if self.status in SETTLED_STATUSES:
                raise ValidationError(
                    f"Cannot add identity to payment {self.id} in status {self.status.value}"
                )
            if len(self.identities) == 1 and amount > self.total_amount:
                raise ValidationError(
                    f"Transfer amount {amount} exceeds payment total {self.total_amount}"
                )

            identity = service.store.add_identity(
                PaymentIdentity(
                    id=uuid.uuid4(),
                    payment_id=self.id,
                    identity_id=params.identity_id,
                    account=params.account,
                    role_name=params.role_name,
                    allocated_amount=amount,
                    meta=params.meta,
                    created_at=service.clock.now(),
                )
            )
            self.identities.append(identity)

        logger.info(
            "payment_identity_added",
            payment_id=str(self.id),
            identity_id=str(identity.identity_id),
            role_name=identity.role_name,
            position=len(self.identities),
        )
        return identity

    # Rail binding

    def bind_fiat_rail(self, service_name: str) -> Payment:
        """
        Bind the payment to a configured fiat service.

        Raises:
            ValidationError: If already bound elsewhere or the service is unknown
        """
        with self._locked() as service:
            if self.type == PaymentType.FIAT and self.fiat_service_name == service_name:
                return self
            if self.type is not None:
                raise ValidationError(
                    f"Payment {self.id} is already bound to the {self.type.value} rail"
                    + (f" ({self.fiat_service_name})" if self.fiat_service_name else "")
                )
            if service_name not in service.fiat_adapters:
                raise ValidationError(f"Unknown fiat service: {service_name}")

            self.type = PaymentType.FIAT
            self.fiat_service_name = service_name
            self._save(service)

        logger.info("payment_rail_bound", payment_id=str(self.id), rail="FIAT", service=service_name)
        return self

    def bind_crypto_rail(self, token_address: str, rate: Union[Decimal, str, int]) -> Payment:
        """
        Bind the payment to a configured token at the given exchange rate.

        Raises:
            ValidationError: If already bound elsewhere, the token is unknown or the rate is not positive
        """
        rate = to_decimal(rate)
        if rate <= 0:
            raise ValidationError("Exchange rate must be positive")

        with self._locked() as service:
            if (
                self.type == PaymentType.CRYPTO
                and (self.crypto_currency or "").lower() == token_address.lower()
                and self.crypto_currency_rate == rate
            ):
                return self
            if self.type is not None:
                raise ValidationError(
                    f"Payment {self.id} is already bound to the {self.type.value} rail"
                )
            if service.crypto is None or not service.crypto.has_token(token_address):
                raise ValidationError(f"Unknown token address: {token_address}")

            self.type = PaymentType.CRYPTO
            self.crypto_currency = token_address
            self.crypto_currency_rate = rate
            self._save(service)

        logger.info(
            "payment_rail_bound",
            payment_id=str(self.id),
            rail="CRYPTO",
            token=token_address,
            rate=str(rate),
        )
        return self

    # Settlement

    def deposit(self) -> Payment:
        """
        Charge the payer over the bound fiat service.

        With a second identity, its allocated amount is transferred to its
        account and the rest (total - transfer) is kept as the platform fee.

        Raises:
            ValidationError: Wrong rail, no payer, already deposited / on hold, or
                the transfer allocation exceeds the total
            NotFoundError: The payer has no card on file
            ExternalServiceError: The charge failed; the attempt is canceled
        """
        with self._locked() as service:
            if self.type != PaymentType.FIAT:
                raise ValidationError(f"Payment {self.id} is not bound to the FIAT rail")
            if not self.identities:
                raise ValidationError(f"Payment {self.id} has no payer identity")
            verified = self._unrecorded_deposit()
            if verified is not None:
                return service.controller.restore_deposit(self, verified)
            if self.status in SETTLED_STATUSES or self.status == PaymentStatus.ON_HOLD:
                raise ValidationError(
                    f"Cannot deposit payment {self.id} in status {self.status.value}"
                )

            payer = self.identities[0]
            transfer = None
            recipient = None
            if len(self.identities) > 1:
                recipient = self.identities[1]
                transfer = Transfer(destination=recipient.account, amount=recipient.allocated_amount)
                # total_amount may have been lowered by a re-submitted create
                if transfer.amount > self.total_amount:
                    raise ValidationError(
                        f"Transfer amount {transfer.amount} exceeds payment total "
                        f"{self.total_amount}"
                    )
            fee = self.total_amount - transfer.amount if transfer else Decimal("0")

            identities_meta = [
                {k: _json_value(v) for k, v in identity.to_dict().items()}
                for identity in (payer, recipient)
                if identity is not None
            ]
            transaction = service.ledger.create(
                payment_id=self.id,
                identity_id=payer.id,
                amount=self.total_amount,
                fee=fee,
                meta={"identities": identities_meta},
            )
            self.transactions.append(transaction)

            request = FiatChargeRequest(
                reference=str(transaction.id),
                payer_account=payer.account,
                amount=self.total_amount,
                currency=self.currency,
                description=self.description,
                transfer=transfer,
            )

            logger.info(
                "payment_deposit_started",
                payment_id=str(self.id),
                transaction_id=str(transaction.id),
                service=self.fiat_service_name,
                amount=str(self.total_amount),
                fee=str(fee),
            )
            return service.controller.settle_fiat(self, transaction, request)

    def confirm_payment(self, continuation_token: str) -> Payment:
        """
        Finish a fiat deposit that was put on hold for step-up authentication.

        The token must be the one handed out by deposit() or the charge id of
        the last attempt. If the charge has not succeeded yet nothing changes
        and the call can be repeated. If it can no longer succeed the hold is
        released and deposit() may be called again.

        Raises:
            ValidationError: Wrong rail, wrong state or unknown token
            ExternalServiceError: The charge has not succeeded, failed for good,
                or the rail failed
        """
        with self._locked() as service:
            if self.type != PaymentType.FIAT:
                raise ValidationError(f"Payment {self.id} is not bound to the FIAT rail")
            verified = self._unrecorded_deposit()
            if verified is not None:
                return service.controller.restore_deposit(self, verified)
            if (
                self.status != PaymentStatus.ON_HOLD
                or self.transaction_status != TransactionStatus.ACTION_REQUIRED
            ):
                raise ValidationError(
                    f"Payment {self.id} is not awaiting authentication "
                    f"(status {self.status.value})"
                )
            transaction = self.last_transaction
            if transaction is None:
                raise ValidationError(f"Payment {self.id} has no transaction to confirm")
            accepted = {t for t in (self.client_secret, transaction.external_ref) if t}
            if not continuation_token or continuation_token not in accepted:
                raise ValidationError("Continuation token does not match this payment")

            logger.info(
                "payment_confirmation_started",
                payment_id=str(self.id),
                transaction_id=str(transaction.id),
            )
            return service.controller.confirm_fiat(self, transaction, continuation_token)

    def confirm_deposit(
        self,
        tx_hash: str,
        meta: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Payment:
        """
        Verify an on-chain transfer paying this payment.

        Blocks while the transfer gathers confirmations; ``timeout`` bounds
        the wait and setting ``cancel_event`` aborts it.

        Args:
            tx_hash: Chain transaction hash
            meta: Replaces the payment's meta once the deposit is verified
            timeout: Overall seconds to wait for the transfer
            cancel_event: Aborts the wait when set

        Raises:
            ValidationError: Wrong rail, no identity, already deposited, or hash already used
            AmountMismatchError: Less than the total amount was received
            NotFoundError: The transfer never appeared
            ExternalServiceError: Explorer failure, timeout or cancel
        """
        if not tx_hash:
            raise ValidationError("Transaction hash is required")

        with self._locked() as service:
            if self.type != PaymentType.CRYPTO:
                raise ValidationError(f"Payment {self.id} is not bound to the CRYPTO rail")
            if not self.identities:
                raise ValidationError(f"Payment {self.id} has no payer identity")
            verified = self._unrecorded_deposit()
            if verified is not None:
                return service.controller.restore_deposit(self, verified)
            if self.status in SETTLED_STATUSES:
                raise ValidationError(
                    f"Cannot confirm deposit for payment {self.id} in status {self.status.value}"
                )
            used = [
                t
                for t in service.store.find_transactions_by_external_ref(tx_hash)
                if t.status == TransactionStatus.VERIFIED
            ]
            if used:
                raise ValidationError(
                    f"Transaction {tx_hash} already settled payment {used[0].payment_id}"
                )

            transaction = service.ledger.create(
                payment_id=self.id,
                identity_id=self.identities[0].id,
                amount=self.total_amount,
                external_ref=tx_hash,
                meta={
                    "token": self.crypto_currency,
                    "rate": _json_value(self.crypto_currency_rate),
                },
            )
            self.transactions.append(transaction)

            logger.info(
                "payment_crypto_confirmation_started",
                payment_id=str(self.id),
                transaction_id=str(transaction.id),
                tx_hash=tx_hash,
                token=self.crypto_currency,
            )
            return service.controller.settle_crypto(
                self, transaction, dict(meta or {}), timeout=timeout, cancel_event=cancel_event
            )

    # Projection

    def to_dict(self) -> Dict[str, Any]:
        """Full projection of the payment with its identities and ledger."""
        return {
            "id": str(self.id),
            "unique_ref": self.unique_ref,
            "tag": self.tag,
            "description": self.description,
            "total_amount": self.total_amount,
            "currency": Currency(self.currency).value,
            "type": self.type.value if self.type else None,
            "fiat_service_name": self.fiat_service_name,
            "crypto_currency": self.crypto_currency,
            "crypto_currency_rate": self.crypto_currency_rate,
            "status": self.status.value,
            "transaction_status": (
                self.transaction_status.value if self.transaction_status else None
            ),
            "client_secret": self.client_secret,
            "meta": self.meta,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "identities": [identity.to_dict() for identity in self.identities],
            "transactions": [transaction.to_dict() for transaction in self.transactions],
        }
