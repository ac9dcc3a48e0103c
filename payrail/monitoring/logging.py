"""
Structured logging configuration.

structlog renders every event as JSON through the stdlib root logger.
Settlement code binds the payment it is working on with ``payment_context``
so nested ledger, controller and adapter events carry the same payment_id.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from payrail.config import Settings, get_settings

# Event keys whose values must never reach a log sink.
REDACTED_KEYS = frozenset({"api_key", "client_secret", "continuation_token"})

# Third-party loggers and the level they are capped at.
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "stripe": logging.INFO,
    "sqlalchemy.engine": logging.WARNING,
}


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Replace continuation tokens and credentials with a marker."""
    for key in REDACTED_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "[redacted]"
    return event_dict


def _processors(settings: Settings) -> List[Any]:
    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        redact_secrets,
        add_app_context,
        structlog.processors.JSONRenderer(),
    ]


def _stdout_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    return handler


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the root logger for JSON output.

    Replaces any handlers already on the root logger, so calling it twice
    does not duplicate output.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(_stdout_handler())

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )


@contextmanager
def payment_context(payment_id: Any, **values: Any) -> Iterator[None]:
    """Bind ``payment_id`` (and any extra keys) to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(payment_id=str(payment_id), **values):
        yield


def get_logger(name: str) -> Any:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
