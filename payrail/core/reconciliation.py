"""
Reconciliation of settlement adapter results into ledger and payment state.

Each call applies exactly one transition:
- adapter success (and, for crypto, sufficient amount) → transaction VERIFIED, payment DEPOSITED
- step-up authentication required (fiat) → transaction ACTION_REQUIRED, payment ON_HOLD
- step-up authentication failed for good (fiat) → transaction CANCELED, hold released
- crypto amount below the expected total → transaction CANCELED, AmountMismatchError
- adapter error or explicit non-confirmation → transaction CANCELED, error raised

The payment row is only written on VERIFIED, ACTION_REQUIRED and a released
hold. Nothing is retried here; polling lives inside the crypto adapter.
"""
from __future__ import annotations

import threading
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog

from payrail.core.clock import Clock
from payrail.core.enums import PaymentStatus, PaymentType, TransactionStatus
from payrail.core.exceptions import (
    AmountMismatchError,
    ExternalServiceError,
    PayrailError,
    ValidationError,
)
from payrail.core.ledger import TransactionLedger
from payrail.core.models import Transaction
from payrail.database.store import PaymentStore
from payrail.integrations.crypto import CryptoSettlementAdapter
from payrail.integrations.fiat import (
    ChargeOutcome,
    FiatAdapter,
    FiatChargeRequest,
    FiatConfirmation,
)
from payrail.integrations.registry import AdapterRegistry
from payrail.monitoring.metrics import settlement_attempts_total

if TYPE_CHECKING:
    from payrail.core.payment import Payment

logger = structlog.get_logger(__name__)


def _error_meta(error: Exception) -> Dict[str, Any]:
    if isinstance(error, ExternalServiceError):
        data = error.context()
    else:
        data = {"message": str(error)}
    data["type"] = type(error).__name__
    return data


class ReconciliationController:
    """Calls the bound adapter and writes the resulting transitions."""

    def __init__(
        self,
        ledger: TransactionLedger,
        store: PaymentStore,
        fiat_adapters: AdapterRegistry[FiatAdapter],
        crypto: Optional[CryptoSettlementAdapter],
        clock: Clock,
    ):
        self.ledger = ledger
        self.store = store
        self.fiat_adapters = fiat_adapters
        self.crypto = crypto
        self.clock = clock

    def _fail(
        self,
        payment: Payment,
        transaction: Transaction,
        error: Exception,
        rail: PaymentType,
        service: Optional[str],
    ) -> PayrailError:
        """Cancel the attempt with the error recorded and return the error to raise."""
        canceled = self.ledger.cancel(
            transaction, {**transaction.meta, "error": _error_meta(error)}
        )
        payment.record_transaction(canceled)
        settlement_attempts_total.labels(rail=rail.value, outcome="canceled").inc()

        logger.error(
            "settlement_failed",
            payment_id=str(payment.id),
            transaction_id=str(transaction.id),
            rail=rail.value,
            error=str(error),
            error_type=type(error).__name__,
        )

        if isinstance(error, PayrailError):
            return error
        return ExternalServiceError(
            f"{rail.value} settlement failed: {error}",
            rail=rail.value,
            service=service,
            reference=str(transaction.id),
            error_type="unexpected",
            original_error=error,
        )

    def _deposited(self, payment: Payment, transaction: Transaction) -> None:
        payment.status = PaymentStatus.DEPOSITED
        payment.transaction_status = TransactionStatus.VERIFIED
        payment.client_secret = None
        payment.updated_at = self.clock.now()
        self.store.update_payment(payment)
        payment.record_transaction(transaction)

    def restore_deposit(self, payment: Payment, transaction: Transaction) -> Payment:
        """
        Re-apply a VERIFIED attempt whose payment row was never updated.

        The ledger and the payment row are separate writes; when the second
        one fails the next operation on the payment lands here instead of
        settling it a second time.
        """
        if payment.type == PaymentType.CRYPTO and "meta" in transaction.meta:
            payment.meta = transaction.meta["meta"]
        self._deposited(payment, transaction)

        logger.warning(
            "payment_deposit_restored",
            payment_id=str(payment.id),
            transaction_id=str(transaction.id),
            external_ref=transaction.external_ref,
        )
        return payment

    def _release_hold(
        self,
        payment: Payment,
        transaction: Transaction,
        confirmation: FiatConfirmation,
        service: Optional[str],
    ) -> ExternalServiceError:
        error = ExternalServiceError(
            f"Charge {confirmation.external_id} ended in '{confirmation.status}'",
            rail=PaymentType.FIAT.value,
            service=service,
            reference=confirmation.external_id,
            error_type="authentication_failed",
            payload=confirmation.raw,
        )
        canceled = self.ledger.cancel(
            transaction,
            {
                **transaction.meta,
                "confirmation": confirmation.raw,
                "error": _error_meta(error),
            },
        )
        payment.status = PaymentStatus.INITIATED
        payment.transaction_status = TransactionStatus.CANCELED
        payment.client_secret = None
        payment.updated_at = self.clock.now()
        self.store.update_payment(payment)
        payment.record_transaction(canceled)
        settlement_attempts_total.labels(rail=PaymentType.FIAT.value, outcome="canceled").inc()

        logger.warning(
            "payment_hold_released",
            payment_id=str(payment.id),
            transaction_id=str(transaction.id),
            status=confirmation.status,
        )
        return error

    def settle_fiat(
        self, payment: Payment, transaction: Transaction, request: FiatChargeRequest
    ) -> Payment:
        """
        Charge the payer through the payment's fiat service.

        Raises:
            NotFoundError: If the payer has no card on file
            ExternalServiceError: If the charge failed or ended in an unexpected state
        """
        service = payment.fiat_service_name
        transaction = replace(transaction, meta={**transaction.meta, "request": request.snapshot()})
        try:
            adapter = self.fiat_adapters.get(service)
            charge = adapter.charge(request)
        except Exception as e:
            raise self._fail(payment, transaction, e, PaymentType.FIAT, service) from e

        meta = {**transaction.meta, "charge": charge.raw}

        if charge.outcome == ChargeOutcome.REQUIRES_ACTION:
            parked = self.ledger.mark_action_required(transaction, charge.external_id, meta)
            payment.status = PaymentStatus.ON_HOLD
            payment.transaction_status = TransactionStatus.ACTION_REQUIRED
            payment.client_secret = charge.token
            payment.updated_at = self.clock.now()
            self.store.update_payment(payment)
            payment.record_transaction(parked)
            settlement_attempts_total.labels(
                rail=PaymentType.FIAT.value, outcome="action_required"
            ).inc()

            logger.info(
                "payment_on_hold",
                payment_id=str(payment.id),
                transaction_id=str(parked.id),
                external_ref=parked.external_ref,
            )
            return payment

        verified = self.ledger.verify(transaction, charge.external_id, meta)
        self._deposited(payment, verified)
        settlement_attempts_total.labels(rail=PaymentType.FIAT.value, outcome="verified").inc()

        logger.info(
            "payment_deposited",
            payment_id=str(payment.id),
            transaction_id=str(verified.id),
            rail=PaymentType.FIAT.value,
            external_ref=verified.external_ref,
        )
        return payment

    def confirm_fiat(self, payment: Payment, transaction: Transaction, token: str) -> Payment:
        """
        Complete a charge that was waiting on step-up authentication.

        A charge that has not succeeded yet leaves every row untouched so the
        caller can ask again later. A charge that can no longer succeed
        cancels the held attempt and releases the hold, so the payment can
        be deposited again.

        Raises:
            ExternalServiceError: If the charge has not succeeded, has failed
                for good, or the rail failed
        """
        service = payment.fiat_service_name
        try:
            confirmation = self.fiat_adapters.get(service).confirm_continuation(token)
        except PayrailError:
            raise
        except Exception as e:
            raise ExternalServiceError(
                f"FIAT confirmation failed: {e}",
                rail=PaymentType.FIAT.value,
                service=service,
                reference=transaction.external_ref,
                error_type="unexpected",
                original_error=e,
            ) from e

        if confirmation.failed:
            raise self._release_hold(payment, transaction, confirmation, service)

        if not confirmation.confirmed:
            logger.warning(
                "payment_confirmation_pending",
                payment_id=str(payment.id),
                transaction_id=str(transaction.id),
                status=confirmation.status,
            )
            raise ExternalServiceError(
                f"Charge {confirmation.external_id} is '{confirmation.status}', not succeeded",
                rail=PaymentType.FIAT.value,
                service=service,
                reference=confirmation.external_id,
                error_type="not_confirmed",
                payload=confirmation.raw,
            )

        verified = self.ledger.verify(
            transaction,
            confirmation.external_id,
            {**transaction.meta, "confirmation": confirmation.raw},
        )
        self._deposited(payment, verified)
        settlement_attempts_total.labels(rail=PaymentType.FIAT.value, outcome="verified").inc()

        logger.info(
            "payment_deposited",
            payment_id=str(payment.id),
            transaction_id=str(verified.id),
            rail=PaymentType.FIAT.value,
            external_ref=verified.external_ref,
        )
        return payment

    def settle_crypto(
        self,
        payment: Payment,
        transaction: Transaction,
        meta: Dict[str, Any],
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Payment:
        """
        Verify an on-chain transfer against the payment.

        The amount check runs before the transaction is verified; a shortfall
        cancels the attempt with the expected and received amounts recorded.

        Raises:
            AmountMismatchError: If less than the total amount was received
            NotFoundError: If the transfer never appeared
            ExternalServiceError: On explorer failure, timeout, cancel or an unconfirmed transfer
        """
        tx_hash = transaction.external_ref
        try:
            if self.crypto is None:
                raise ValidationError("No chains are configured")
            lookup = self.crypto.lookup(
                tx_hash,
                payment.crypto_currency,
                timeout=timeout,
                cancel_event=cancel_event,
            )
        except Exception as e:
            raise self._fail(payment, transaction, e, PaymentType.CRYPTO, None) from e

        lookup_meta = {**transaction.meta, "lookup": lookup.snapshot()}

        if not lookup.confirmed:
            error = ExternalServiceError(
                f"Transaction {tx_hash} is not confirmed",
                rail=PaymentType.CRYPTO.value,
                reference=tx_hash,
                error_type="not_confirmed",
            )
            raise self._fail(
                payment,
                replace(transaction, meta=lookup_meta),
                error,
                PaymentType.CRYPTO,
                None,
            )

        if lookup.amount < payment.total_amount:
            canceled = self.ledger.cancel(
                transaction,
                {
                    **lookup_meta,
                    "error": {
                        "type": AmountMismatchError.__name__,
                        "expected": str(payment.total_amount),
                        "received": str(lookup.amount),
                    },
                },
            )
            payment.record_transaction(canceled)
            settlement_attempts_total.labels(
                rail=PaymentType.CRYPTO.value, outcome="amount_mismatch"
            ).inc()

            logger.warning(
                "crypto_amount_mismatch",
                payment_id=str(payment.id),
                transaction_id=str(transaction.id),
                tx_hash=tx_hash,
                expected=str(payment.total_amount),
                received=str(lookup.amount),
            )
            raise AmountMismatchError(payment.total_amount, lookup.amount, tx_hash)

        verified = self.ledger.verify(transaction, lookup.tx_hash, {**lookup_meta, "meta": meta})
        payment.meta = meta
        self._deposited(payment, verified)
        settlement_attempts_total.labels(rail=PaymentType.CRYPTO.value, outcome="verified").inc()

        logger.info(
            "payment_deposited",
            payment_id=str(payment.id),
            transaction_id=str(verified.id),
            rail=PaymentType.CRYPTO.value,
            external_ref=verified.external_ref,
            amount=str(lookup.amount),
        )
        return payment
