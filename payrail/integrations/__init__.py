"""Settlement adapters for the fiat and crypto rails."""
from .crypto import CHAIN_TYPES, CryptoLookup, CryptoSettlementAdapter
from .fiat import ChargeOutcome, FiatAdapter, FiatCharge, FiatChargeRequest, FiatConfirmation, Transfer
from .registry import FIAT_SERVICE_TYPES, AdapterRegistry, build_fiat_registry
from .stripe_client import StripeFiatAdapter

__all__ = [
    "CHAIN_TYPES",
    "FIAT_SERVICE_TYPES",
    "AdapterRegistry",
    "ChargeOutcome",
    "CryptoLookup",
    "CryptoSettlementAdapter",
    "FiatAdapter",
    "FiatCharge",
    "FiatChargeRequest",
    "FiatConfirmation",
    "StripeFiatAdapter",
    "Transfer",
    "build_fiat_registry",
]
