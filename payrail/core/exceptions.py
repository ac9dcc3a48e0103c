"""
Exceptions for the payrail settlement core.

Exception hierarchy:
    PayrailError (base)
    ├── ValidationError          wrong rail, missing identity, invalid state
    ├── AmountMismatchError      confirmed crypto transfer below expected amount
    ├── NotFoundError            no matching payment, instrument or transaction
    ├── ExternalServiceError     adapter transport failure or unexpected state
    │   ├── ConfirmationTimeoutError
    │   └── LookupCancelledError
    └── PersistenceError         store operation failure
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class PayrailError(Exception):
    """Base exception for all settlement errors."""


class ValidationError(PayrailError):
    """Raised when an operation is not valid for the payment's current state."""


class AmountMismatchError(PayrailError):
    """
    Raised when a confirmed crypto transfer is smaller than expected.

    The transaction is never verified when this is raised.
    """

    def __init__(self, expected: Decimal, received: Decimal, reference: Optional[str] = None):
        super().__init__(
            f"transaction amount mismatch: expected {expected} but got {received}"
            + (f" (tx {reference})" if reference else "")
        )
        self.expected = expected
        self.received = received
        self.reference = reference


class NotFoundError(PayrailError):
    """Raised when a payment, payment instrument or external transaction is missing."""


class ExternalServiceError(PayrailError):
    """
    Raised when a settlement adapter fails or reports an unexpected state.

    Carries enough context to reconstruct the failed call.
    """

    def __init__(
        self,
        message: str,
        rail: Optional[str] = None,
        service: Optional[str] = None,
        reference: Optional[str] = None,
        error_type: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.rail = rail
        self.service = service
        self.reference = reference
        self.error_type = error_type
        self.original_error = original_error
        self.payload = payload

    def context(self) -> Dict[str, Any]:
        """Return the error context as a JSON-serialisable dict."""
        return {
            "message": str(self),
            "rail": self.rail,
            "service": self.service,
            "reference": self.reference,
            "error_type": self.error_type,
            "payload": self.payload,
        }


class ConfirmationTimeoutError(ExternalServiceError):
    """Raised when a chain transfer never reached the required confirmation depth."""


class LookupCancelledError(ExternalServiceError):
    """Raised when a caller aborts a confirmation poll."""


class PersistenceError(PayrailError):
    """Raised when the payment store fails."""
