"""
Card-rail settlement contract.

A fiat adapter charges a payer's stored card and reports one of two
successful outcomes: the charge is confirmed, or the payer must complete a
step-up authentication identified by a continuation token. Every other
result is raised as an ExternalServiceError.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from payrail.core.enums import Currency


@dataclass(frozen=True)
class Transfer:
    """Portion of a charge routed to a connected account."""

    destination: str
    amount: Decimal


@dataclass(frozen=True)
class FiatChargeRequest:
    """Everything a card rail needs to charge the payer."""

    reference: str
    payer_account: str
    amount: Decimal
    currency: Currency
    description: str = ""
    transfer: Optional[Transfer] = None

    @property
    def fee(self) -> Decimal:
        """Platform fee kept when part of the charge is transferred."""
        if self.transfer is None:
            return Decimal("0")
        return self.amount - self.transfer.amount

    def snapshot(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "reference": self.reference,
            "payer_account": self.payer_account,
            "amount": str(self.amount),
            "currency": Currency(self.currency).value,
            "description": self.description,
            "fee": str(self.fee),
        }
        if self.transfer is not None:
            data["transfer"] = {
                "destination": self.transfer.destination,
                "amount": str(self.transfer.amount),
            }
        return data


class ChargeOutcome(str, Enum):
    CONFIRMED = "CONFIRMED"
    REQUIRES_ACTION = "REQUIRES_ACTION"


@dataclass(frozen=True)
class FiatCharge:
    """
    Interpreted rail response to a charge.

    Attributes:
        outcome: CONFIRMED or REQUIRES_ACTION
        external_id: Rail-issued charge id
        amount_minor: Charged amount in minor units
        currency: Lower-case currency code as returned by the rail
        token: Continuation token when outcome is REQUIRES_ACTION
        raw: JSON-safe snapshot of the provider payload
    """

    outcome: ChargeOutcome
    external_id: str
    amount_minor: int
    currency: str
    token: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FiatConfirmation:
    """
    Result of re-querying a charge after step-up authentication.

    Attributes:
        confirmed: The charge succeeded
        external_id: Rail-issued charge id
        status: Raw rail status
        failed: The charge can no longer succeed; a new attempt is needed
        raw: JSON-safe snapshot of the provider payload
    """

    confirmed: bool
    external_id: str
    status: str
    failed: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


class FiatAdapter(ABC):
    """A configured card processor account."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def charge(self, request: FiatChargeRequest) -> FiatCharge:
        """
        Charge the payer's stored card.

        Raises:
            NotFoundError: If the payer has no usable card
            ExternalServiceError: On transport failure or any state other
                than succeeded / requires_action
        """

    @abstractmethod
    def confirm_continuation(self, token: str) -> FiatConfirmation:
        """Re-fetch the charge behind a continuation token."""
