"""Structured logging for the payments service.

Every record, including uvicorn, SQLAlchemy and httpx records bridged from
stdlib logging, passes through one processor chain that:
- tags the record with the service name and the request's correlation id
- redacts payer personal data before anything is rendered
- renders JSON in production and colored console output in debug
"""

import logging
import logging.config
from typing import Any

import structlog
from asgi_correlation_id.context import correlation_id

SERVICE_NAME = "fakelive-api"
REDACTED = "[REDACTED]"

# Keys PayPal uses for payer identity. Matched case-insensitively at any depth.
PII_KEYS = frozenset({
    "payer",
    "email",
    "email_address",
    "name",
    "given_name",
    "surname",
    "full_name",
    "phone",
    "phone_number",
    "address",
    "shipping",
})


def add_correlation_id(logger, method, event_dict):
    """Inject correlation_id from asgi-correlation-id context into every log entry."""
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def add_service(logger, method, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED if isinstance(key, str) and key.lower() in PII_KEYS else _scrub(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_scrub(item) for item in value]
    return value


def redact_payer_pii(logger, method, event_dict):
    """Replace payer identity fields with a placeholder, including inside nested payloads.

    Returns copies of nested containers; the caller's objects are untouched.
    """
    for key, value in list(event_dict.items()):
        if key.lower() in PII_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, (dict, list, tuple)):
            event_dict[key] = _scrub(value)
    return event_dict


def shared_processors() -> list:
    """Processors run for both structlog and bridged stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service,
        add_correlation_id,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        redact_payer_pii,
    ]


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog and route stdlib logging through it.

    Must run before the first ``structlog.get_logger`` call is bound, since
    the processor chain is cached on first use.

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: True for JSON output (production), False for ConsoleRenderer (dev)
    """
    pre_chain = shared_processors()

    if json_logs:
        # Tracebacks as structured frames so log search can filter on them
        render = [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        render = [structlog.dev.ConsoleRenderer()]

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [structlog.stdlib.ProcessorFormatter.remove_processors_meta, *render],
                "foreign_pre_chain": pre_chain,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["default"], "level": log_level},
        "loggers": {
            "uvicorn.access": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
        },
    })

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
