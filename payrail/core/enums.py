"""Enumerations shared by the settlement core."""
from enum import Enum


class PaymentType(str, Enum):
    """Settlement rail a payment is bound to."""

    FIAT = "FIAT"
    CRYPTO = "CRYPTO"


class TransactionType(str, Enum):
    """Direction of a ledger entry."""

    DEPOSIT = "DEPOSIT"
    PAYOUT = "PAYOUT"


class PaymentStatus(str, Enum):
    """
    Payment lifecycle states.

    State machine:
    INITIATED → DEPOSITED
        ↓
      ON_HOLD → DEPOSITED
    """

    INITIATED = "INITIATED"
    PENDING_DEPOSIT = "PENDING_DEPOSIT"
    DEPOSITED = "DEPOSITED"
    ON_HOLD = "ON_HOLD"
    PAID_OUT = "PAID_OUT"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"


class TransactionStatus(str, Enum):
    """Outcome of a single settlement attempt."""

    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    CANCELED = "CANCELED"
    ACTION_REQUIRED = "ACTION_REQUIRED"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.VERIFIED, TransactionStatus.CANCELED)


class Currency(str, Enum):
    """Supported fiat currencies."""

    USD = "USD"
    JPY = "JPY"


class FiatService(str, Enum):
    """Card processors a fiat rail can be served by."""

    STRIPE = "STRIPE"


class NetworkType(str, Enum):
    """Blockchain families."""

    EVM = "EVM"
    CARDANO = "CARDANO"


class NetworkMode(str, Enum):
    MAINNET = "MAINNET"
    TESTNET = "TESTNET"


# Payments past this point have been settled and must not gain new parties.
SETTLED_STATUSES = frozenset(
    {
        PaymentStatus.DEPOSITED,
        PaymentStatus.PAID_OUT,
        PaymentStatus.REFUNDED,
    }
)
