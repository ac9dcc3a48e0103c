"""Payment settlement over card (Stripe) and blockchain rails."""
from payrail.core.enums import Currency, PaymentStatus, PaymentType, TransactionStatus
from payrail.core.models import IdentityParams, PaymentParams
from payrail.core.payment import Payment
from payrail.core.service import PaymentService

__version__ = "0.1.0"

__all__ = [
    "Currency",
    "IdentityParams",
    "Payment",
    "PaymentParams",
    "PaymentService",
    "PaymentStatus",
    "PaymentType",
    "TransactionStatus",
]
