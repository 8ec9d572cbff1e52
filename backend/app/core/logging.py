"""Structured logging for the webhook service.

Every entry carries the request correlation id and, while a delivery is being
processed, the Stripe event id, type and kind (see delivery_context). Keys
that could hold signing material are masked before rendering. Third-party
logs (uvicorn, SQLAlchemy, stripe) go through the same chain.
"""

import logging
import logging.config
from contextlib import AbstractContextManager

import structlog
from asgi_correlation_id.context import correlation_id

SENSITIVE_KEYS = frozenset(
    {"stripe_signature", "signature_header", "webhook_secret", "stripe_webhook_secret", "stripe_secret_key", "api_key"}
)


def add_correlation_id(logger, method, event_dict):
    """Inject correlation_id from asgi-correlation-id context into every log entry."""
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def mask_sensitive_keys(logger, method, event_dict):
    """Replace values of signing-material keys so they never reach a log sink."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = "[masked]"
    return event_dict


def delivery_context(event_id: str, event_type: str, kind: str) -> AbstractContextManager:
    """Bind one webhook delivery's identity to every log entry made inside the block."""
    return structlog.contextvars.bound_contextvars(event_id=event_id, event_type=event_type, kind=kind)


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog with stdlib bridge for full JSON output.

    Call this BEFORE any other app imports; structlog caches the processor
    chain on first use.

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: True for JSON output (production), False for ConsoleRenderer (dev)
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        mask_sensitive_keys,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "json",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["default"], "level": log_level},
        "loggers": {
            "uvicorn.access": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
            "stripe": {"level": "WARNING"},
        },
    })

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
