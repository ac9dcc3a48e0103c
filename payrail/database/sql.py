"""
SQLAlchemy implementation of the payment store.

Creation is an upsert on unique_ref (``INSERT ... ON CONFLICT DO UPDATE``
on PostgreSQL and SQLite) that only rewrites a payment still INITIATED.
Transaction updates are guarded in SQL so a terminal row is never changed.
"""
from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from payrail.core.enums import (
    Currency,
    PaymentStatus,
    PaymentType,
    TransactionStatus,
    TransactionType,
)
from payrail.core.exceptions import NotFoundError, PersistenceError, ValidationError
from payrail.core.models import PaymentIdentity, PaymentParams, Transaction
from payrail.core.payment import Payment
from payrail.database.models import PaymentIdentityModel, PaymentModel, TransactionModel
from payrail.database.store import PaymentStore

logger = structlog.get_logger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

# Columns a re-submitted create may overwrite while the payment is INITIATED.
_RESUBMIT_COLUMNS = ("tag", "description", "total_amount", "currency", "meta", "updated_at")

_TERMINAL = [TransactionStatus.VERIFIED.value, TransactionStatus.CANCELED.value]


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_payment(model: PaymentModel) -> Payment:
    return Payment(
        id=model.id,
        unique_ref=model.unique_ref,
        total_amount=model.total_amount,
        currency=Currency(model.currency),
        tag=model.tag or "",
        description=model.description or "",
        status=PaymentStatus(model.status),
        type=PaymentType(model.type) if model.type else None,
        fiat_service_name=model.fiat_service_name,
        crypto_currency=model.crypto_currency,
        crypto_currency_rate=model.crypto_currency_rate,
        transaction_status=(
            TransactionStatus(model.transaction_status) if model.transaction_status else None
        ),
        client_secret=model.client_secret,
        meta=model.meta,
        created_at=_utc(model.created_at),
        updated_at=_utc(model.updated_at),
    )


def _to_identity(model: PaymentIdentityModel) -> PaymentIdentity:
    return PaymentIdentity(
        id=model.id,
        payment_id=model.payment_id,
        identity_id=model.identity_id,
        account=model.account,
        role_name=model.role_name or "",
        allocated_amount=model.allocated_amount,
        meta=model.meta,
        created_at=_utc(model.created_at),
    )


def _to_transaction(model: TransactionModel) -> Transaction:
    return Transaction(
        id=model.id,
        payment_id=model.payment_id,
        identity_id=model.identity_id,
        amount=model.amount,
        created_at=_utc(model.created_at),
        type=TransactionType(model.type),
        tag=model.tag or "",
        external_ref=model.tx_id,
        fee=model.fee,
        discount=model.discount,
        status=TransactionStatus(model.status),
        meta=model.meta or {},
        canceled_at=_utc(model.canceled_at),
        verified_at=_utc(model.verified_at),
    )


def _transaction_state(transaction: Transaction) -> Dict[str, Any]:
    return {
        "tx_id": transaction.external_ref,
        "status": transaction.status.value,
        "meta": transaction.meta,
        "canceled_at": transaction.canceled_at,
        "verified_at": transaction.verified_at,
    }


class SqlAlchemyPaymentStore(PaymentStore):
    """Payment store backed by a relational database through SQLAlchemy 2.0."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("payment_store_error", error=str(e), error_type=type(e).__name__)
            raise PersistenceError(f"Payment store failure: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _next_position(session: Session, model: Any, payment_id: uuid.UUID) -> int:
        current = session.scalar(
            select(func.max(model.position)).where(model.payment_id == payment_id)
        )
        return 0 if current is None else current + 1

    def upsert_payment(self, params: PaymentParams, now: datetime) -> Payment:
        values = {
            "id": uuid.uuid4(),
            "unique_ref": params.unique_ref,
            "tag": params.tag,
            "description": params.description,
            "total_amount": params.total_amount,
            "currency": Currency(params.currency).value,
            "meta": params.meta,
            "status": PaymentStatus.INITIATED.value,
            "created_at": now,
            "updated_at": now,
        }
        table = PaymentModel.__table__

        with self._session() as session:
            insert = _UPSERT_DIALECTS.get(session.get_bind().dialect.name)
            if insert is not None:
                stmt = insert(table).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.c.unique_ref],
                    set_={name: stmt.excluded[name] for name in _RESUBMIT_COLUMNS},
                    where=table.c.status == PaymentStatus.INITIATED.value,
                )
                session.execute(stmt)
            else:
                self._upsert_portable(session, values)

            model = session.scalars(
                select(PaymentModel)
                .where(PaymentModel.unique_ref == params.unique_ref)
                .execution_options(populate_existing=True)
            ).one()
            return _to_payment(model)

    @staticmethod
    def _upsert_portable(session: Session, values: Dict[str, Any]) -> None:
        existing = session.scalars(
            select(PaymentModel)
            .where(PaymentModel.unique_ref == values["unique_ref"])
            .with_for_update()
        ).one_or_none()
        if existing is None:
            session.add(PaymentModel(**values))
        elif existing.status == PaymentStatus.INITIATED.value:
            for name in _RESUBMIT_COLUMNS:
                setattr(existing, name, values[name])
        session.flush()

    def get_payment(self, payment_id: uuid.UUID) -> Optional[Payment]:
        with self._session() as session:
            model = session.get(PaymentModel, payment_id)
            return _to_payment(model) if model is not None else None

    def get_payment_by_ref(self, unique_ref: str) -> Optional[Payment]:
        with self._session() as session:
            model = session.scalars(
                select(PaymentModel).where(PaymentModel.unique_ref == unique_ref)
            ).one_or_none()
            return _to_payment(model) if model is not None else None

    def update_payment(self, payment: Payment) -> Payment:
        with self._session() as session:
            model = session.get(PaymentModel, payment.id)
            if model is None:
                raise NotFoundError(f"Payment not found: {payment.id}")

            model.tag = payment.tag
            model.description = payment.description
            model.total_amount = payment.total_amount
            model.currency = Currency(payment.currency).value
            model.type = payment.type.value if payment.type else None
            model.fiat_service_name = payment.fiat_service_name
            model.crypto_currency = payment.crypto_currency
            model.crypto_currency_rate = payment.crypto_currency_rate
            model.status = payment.status.value
            model.transaction_status = (
                payment.transaction_status.value if payment.transaction_status else None
            )
            model.client_secret = payment.client_secret
            model.meta = payment.meta
            model.updated_at = payment.updated_at
            session.flush()
            return _to_payment(model)

    def add_identity(self, identity: PaymentIdentity) -> PaymentIdentity:
        with self._session() as session:
            if session.get(PaymentModel, identity.payment_id) is None:
                raise NotFoundError(f"Payment not found: {identity.payment_id}")
            model = PaymentIdentityModel(
                id=identity.id,
                payment_id=identity.payment_id,
                position=self._next_position(session, PaymentIdentityModel, identity.payment_id),
                identity_id=identity.identity_id,
                role_name=identity.role_name,
                account=identity.account,
                allocated_amount=identity.allocated_amount,
                meta=identity.meta,
                created_at=identity.created_at,
            )
            session.add(model)
            session.flush()
            return _to_identity(model)

    def list_identities(self, payment_id: uuid.UUID) -> List[PaymentIdentity]:
        with self._session() as session:
            models = session.scalars(
                select(PaymentIdentityModel)
                .where(PaymentIdentityModel.payment_id == payment_id)
                .order_by(PaymentIdentityModel.position)
            ).all()
            return [_to_identity(model) for model in models]

    def insert_transaction(self, transaction: Transaction) -> Transaction:
        with self._session() as session:
            if session.get(PaymentModel, transaction.payment_id) is None:
                raise NotFoundError(f"Payment not found: {transaction.payment_id}")
            model = TransactionModel(
                id=transaction.id,
                payment_id=transaction.payment_id,
                position=self._next_position(session, TransactionModel, transaction.payment_id),
                identity_id=transaction.identity_id,
                tag=transaction.tag,
                amount=transaction.amount,
                fee=transaction.fee,
                discount=transaction.discount,
                type=transaction.type.value,
                created_at=transaction.created_at,
                **_transaction_state(transaction),
            )
            session.add(model)
            session.flush()
            return _to_transaction(model)

    def update_transaction(self, transaction: Transaction) -> Transaction:
        with self._session() as session:
            result = session.execute(
                update(TransactionModel)
                .where(
                    TransactionModel.id == transaction.id,
                    TransactionModel.status.not_in(_TERMINAL),
                )
                .values(**_transaction_state(transaction))
                .execution_options(synchronize_session=False)
            )
            model = session.get(TransactionModel, transaction.id, populate_existing=True)
            if model is None:
                raise NotFoundError(f"Transaction not found: {transaction.id}")
            if result.rowcount == 0:
                raise ValidationError(f"Transaction {transaction.id} is already {model.status}")
            return _to_transaction(model)

    def list_transactions(self, payment_id: uuid.UUID) -> List[Transaction]:
        with self._session() as session:
            models = session.scalars(
                select(TransactionModel)
                .where(TransactionModel.payment_id == payment_id)
                .order_by(TransactionModel.position)
            ).all()
            return [_to_transaction(model) for model in models]

    def find_transactions_by_external_ref(self, external_ref: str) -> List[Transaction]:
        with self._session() as session:
            models = session.scalars(
                select(TransactionModel).where(TransactionModel.tx_id == external_ref)
            ).all()
            return [_to_transaction(model) for model in models]
