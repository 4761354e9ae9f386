"""
Structured Logging with Structlog.

Events are snake_case names with keyword context, rendered as JSON (or
console output when LOG_FORMAT=console). Purchase tokens and signed payloads
are bearer secrets: pass them through token_preview, and the redaction
processor shortens any that slip through under a known key.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from iap_engine.config import settings

SECRET_KEYS = frozenset({"token", "purchase_token", "signed_payload", "private_key"})


def token_preview(token: str) -> str:
    """Shorten a purchase token for logs."""
    if len(token) <= 12:
        return "***"
    return token[:12] + "..."


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.service_version
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Shorten values logged under secret-bearing keys."""
    for key in SECRET_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and not value.endswith("...") and value != "***":
            event_dict[key] = token_preview(value)
    return event_dict


def setup_logging() -> None:
    """
    Configure stdlib logging and structlog from LOG_LEVEL / LOG_FORMAT.

    A JSON line looks like:
    {"event": "iap_purchase_applied", "level": "info", "logger":
     "iap_engine.services.purchase_processor", "service": "iap-engine",
     "vendor": "google", "user_id": 42, "timestamp": "2025-01-08T12:00:00Z"}
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind structured context for the duration of a block.

    Usage:
        with log_context(vendor="google", user_id=42):
            logger.info("iap_purchase_received")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
