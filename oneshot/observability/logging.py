"""
Structured logging for the unlock and demand services.

Events are rendered as JSON (or console lines in development) and carry the
service name, version and the request id of the HTTP call that produced them.
Voter fingerprints and email addresses are masked before rendering.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from oneshot.config import settings

# Event keys holding a voter or subscriber identity
_FINGERPRINT_KEYS = ("fingerprint", "subscriber_id", "subscriber_ids")
_EMAIL_KEYS = ("email",)
_VISIBLE_CHARS = 6


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp every event with the service name and API version."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def mask_fingerprint(value: str) -> str:
    if len(value) <= _VISIBLE_CHARS:
        return "***"
    return value[:_VISIBLE_CHARS] + "***"


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def mask_identities(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask fingerprints and emails so raw device identities never reach the log sink."""
    for key in _FINGERPRINT_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str):
            event_dict[key] = mask_fingerprint(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = [mask_fingerprint(str(v)) for v in value]
    for key in _EMAIL_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str):
            event_dict[key] = mask_email(value)
    return event_dict


def setup_logging() -> None:
    """Route structlog through stdlib logging on stdout at the configured level."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        mask_identities,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def request_context(request_id: str, **extra: Any) -> Iterator[None]:
    """Bind the request id (and any extra fields) to events logged inside the block."""
    with structlog.contextvars.bound_contextvars(request_id=request_id, **extra):
        yield
