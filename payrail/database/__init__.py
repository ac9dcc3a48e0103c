"""Persistence for payments, identities and the transaction ledger."""
from .connection import close_db, get_engine, get_session_factory, init_db
from .memory import InMemoryPaymentStore
from .models import Base, PaymentIdentityModel, PaymentModel, TransactionModel
from .sql import SqlAlchemyPaymentStore
from .store import PaymentStore

__all__ = [
    "Base",
    "InMemoryPaymentStore",
    "PaymentIdentityModel",
    "PaymentModel",
    "PaymentStore",
    "SqlAlchemyPaymentStore",
    "TransactionModel",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
