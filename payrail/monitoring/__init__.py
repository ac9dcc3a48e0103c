"""Logging and metrics for payrail."""
from .logging import get_logger, payment_context, setup_logging

__all__ = ["get_logger", "payment_context", "setup_logging"]
