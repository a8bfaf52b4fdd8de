"""structlog setup for the RoleSwitch service.

Output is JSON lines by default and ConsoleRenderer when ``debug`` is on;
uvicorn and httpx records pass through the same formatter via the stdlib
bridge. Each entry carries the request's correlation id.

API keys and their HMAC secrets are the only credentials this service
holds, and sync requests carry both the key and its signature in headers.
``redact_secrets`` masks those values wherever they appear as top-level
fields or inside a logged ``headers`` mapping, so a key id (``key_id``) is
the most a log line ever identifies.
"""

import logging
import logging.config
from collections.abc import Mapping

import structlog
from asgi_correlation_id.context import correlation_id

REDACTED = "[redacted]"
SENSITIVE_FIELDS = frozenset({"secret", "api_key", "key", "signature", "authorization"})
SENSITIVE_HEADERS = frozenset({"authorization", "x-api-key", "x-signature"})


def add_correlation_id(logger, method, event_dict):
    """Copy the asgi-correlation-id context value into the entry."""
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_secrets(logger, method, event_dict):
    """Mask key material in fields and in a ``headers`` mapping."""
    for field in SENSITIVE_FIELDS & event_dict.keys():
        event_dict[field] = REDACTED
    headers = event_dict.get("headers")
    if isinstance(headers, Mapping):
        event_dict["headers"] = {
            name: REDACTED if name.lower() in SENSITIVE_HEADERS else value
            for name, value in headers.items()
        }
    return event_dict


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Install the processor chain and the root handler.

    Must run before any module calls ``structlog.get_logger``: loggers are
    cached on first use.

    Args:
        log_level: Root log level name
        json_logs: JSONRenderer when True, ConsoleRenderer otherwise
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        final = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        final = [structlog.dev.ConsoleRenderer()]

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structlog": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [structlog.stdlib.ProcessorFormatter.remove_processors_meta, *final],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structlog",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level.upper()},
        "loggers": {
            "uvicorn.access": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
        },
    })

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
