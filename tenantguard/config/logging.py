"""Structured logging for tenantguard.

Two channels share one structlog pipeline: the application log and the
``tenantguard.security`` channel the audit service writes to. Security
lines are tagged so a collector can route them apart, and any key that
looks like a credential is masked before rendering, whichever channel
emits it.
"""

import logging
import sys

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

SECURITY_LOGGER = "tenantguard.security"

# Keys never written to logs or stored event payloads
SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "password_confirmation",
        "secret",
        "token",
        "api_key",
        "apikey",
        "access_key",
        "secret_key",
        "authorization",
        "cookie",
        "credit_card",
        "ssn",
    }
)

REDACTED = "[REDACTED]"

# Chatty third-party loggers capped at WARNING unless the app runs at DEBUG
_NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "uvicorn.access")


def redact_sensitive(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    for key in event_dict:
        if key.lower() in SENSITIVE_FIELDS:
            event_dict[key] = REDACTED
    return event_dict


def tag_security_channel(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    if event_dict.get("logger") == SECURITY_LOGGER:
        event_dict["channel"] = "security"
    return event_dict


def _level(name: str | None, default: int) -> int:
    if not name:
        return default
    return getattr(logging, name.upper(), default)


def setup_logging(
    log_level: str = "INFO",
    json_output: bool = False,
    security_log_level: str | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    ``security_log_level`` defaults to INFO regardless of ``log_level``,
    so a quiet application log still carries every security event.
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        tag_security_channel,
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output or not sys.stderr.isatty():
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_level = _level(log_level, logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=root_level)

    logging.getLogger(SECURITY_LOGGER).setLevel(_level(security_log_level, logging.INFO))
    if root_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(root_level, logging.WARNING))
