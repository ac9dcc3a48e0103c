"""
Prometheus metrics for settlement monitoring.

Tracks:
- Settlement attempts by rail and outcome
- Adapter call duration
- Adapter errors by classification
- Confirmation polling attempts
"""
from prometheus_client import Counter, Histogram

settlement_attempts_total = Counter(
    "payrail_settlement_attempts_total",
    "Total settlement attempts",
    ["rail", "outcome"],  # outcome: verified, action_required, canceled, amount_mismatch
)

adapter_request_duration_seconds = Histogram(
    "payrail_adapter_request_duration_seconds",
    "Settlement adapter call duration in seconds",
    ["rail", "operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

adapter_errors_total = Counter(
    "payrail_adapter_errors_total",
    "Total settlement adapter errors",
    ["rail", "error_type"],  # transient, permanent, rate_limit, ...
)

confirmation_poll_attempts = Histogram(
    "payrail_confirmation_poll_attempts",
    "Explorer lookups needed before a chain transfer was resolved",
    ["network"],
    buckets=(1, 2, 3, 5, 10, 15, 20, 30),
)
