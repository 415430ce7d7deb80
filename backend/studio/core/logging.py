"""
structlog setup for the credits core.

Production emits one JSON object per line; development gets the colored
console renderer. Payment headers and tokens can end up in event dicts
(webhook audit, auth failures), so they are masked before rendering.
"""

import logging
import sys
from typing import Any

import structlog
from studio.core.config import get_settings

SENSITIVE_KEYS = {
    "authorization",
    "x-signature",
    "x-hub-signature-256",
    "x-internal-token",
    "signature",
    "secret",
    "token",
}


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: "***" if str(k).lower() in SENSITIVE_KEYS else _mask(v) for k, v in value.items()}
    return value


def redact_sensitive(logger, method_name: str, event_dict: dict) -> dict:
    for key in list(event_dict):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = "***"
        else:
            event_dict[key] = _mask(event_dict[key])
    return event_dict


def setup_logging() -> None:
    settings = get_settings()
    production = settings.ENVIRONMENT == "production"

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
    ]
    if production:
        processors.append(structlog.processors.format_exc_info)

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog.processors.JSONRenderer() if production else structlog.dev.ConsoleRenderer()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer]
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # SQL echo and per-request access lines duplicate our own events
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def bind_context(**values: Any) -> None:
    """Attach ids (user_id, payment_id, ...) to every later log line of this request."""
    structlog.contextvars.bind_contextvars(**values)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
