"""
Structured Logging with Structlog.

Every entry is a snake_case event plus keyword context. Payment secrets
(client secrets, webhook signatures, card numbers) never reach the output:
the redaction processor masks them wherever they appear in the event dict.
"""

import logging
import sys
from collections.abc import Mapping
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from voucherflow.config import settings

REDACTED = "[redacted]"

# Keys whose values are bearer-equivalent for the processor or the buyer
SECRET_KEYS = frozenset(
    {
        "authorization",
        "card_number",
        "client_handle",
        "client_secret",
        "cvc",
        "signature",
        "stripe-signature",
        "stripe_signature",
        "token",
    }
)

# Chatty third-party loggers, capped at WARNING outside DEBUG
NOISY_LOGGERS = ("stripe", "asyncpg", "httpx", "uvicorn.access")


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            k: REDACTED if str(k).lower() in SECRET_KEYS else _redact(v) for k, v in value.items()
        }
    if isinstance(value, list | tuple):
        return type(value)(_redact(v) for v in value)
    return value


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask payment secrets, including inside nested dicts."""
    for key in list(event_dict):
        if key.lower() in SECRET_KEYS:
            event_dict[key] = REDACTED
        elif key != "event":
            event_dict[key] = _redact(event_dict[key])
    return event_dict


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    return event_dict


def build_processors(log_format: str, log_level: str) -> list[Processor]:
    """Processor chain shared by every structlog logger."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    return processors


def setup_logging() -> None:
    """
    Configure structlog over stdlib logging.

    A JSON entry looks like:
    {
        "event": "unit_reserved",
        "level": "info",
        "timestamp": "2026-10-18T12:00:00.123456Z",
        "logger": "voucherflow.services.inventory",
        "service": "voucherflow-api",
        "version": "0.1.0",
        "request_id": "5c0f...",
        "deal_id": "...",
        "remaining_quantity": 4
    }
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    if level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=build_processors(settings.log_format, settings.log_level),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind context variables for every log entry inside the block.

    Usage:
        with log_context(request_id=request_id, purchase_id=str(purchase_id)):
            logger.info("purchase_confirmed")

    Values bound by an outer block under the same key are restored on exit.
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs
        self._tokens: Mapping[str, Any] = {}

    def __enter__(self) -> None:
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)
