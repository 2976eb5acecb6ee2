"""
Structured logging configuration using structlog.

Every module logs snake_case events through `get_logger(__name__)`. The request
middleware binds a request ID, the auth dispatcher binds the identity, and
background jobs bind their task name with `bind_context`.

Token, password and secret values are masked before rendering, whatever the
call site passes.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any, cast

import structlog
from structlog.types import EventDict, Processor

from app.config import settings

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
identity_id_ctx: ContextVar[int | None] = ContextVar("identity_id", default=None)

REDACTED = "[redacted]"

# Event keys whose values are credentials
SENSITIVE_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "id_token",
        "session_token",
        "token",
        "password",
        "new_password",
        "current_password",
        "client_secret",
        "code",
        "code_verifier",
        "device_code",
        "authorization",
    }
)


def add_request_identity(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    request_id = request_id_ctx.get()
    if request_id:
        event_dict["request_id"] = request_id
    identity_id = identity_id_ctx.get()
    if identity_id:
        event_dict.setdefault("identity_id", identity_id)
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging() -> None:
    """
    Configure structlog and route stdlib logging through it.

    Console renderer in development (unless LOG_FORMAT=json), JSON elsewhere.
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_request_identity,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: Processor
    if settings.ENVIRONMENT == "development" and settings.LOG_FORMAT != "json":
        renderer = structlog.dev.ConsoleRenderer(colors=True)
        processors = [*shared_processors, renderer]
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = [*shared_processors, structlog.processors.format_exc_info, renderer]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.NOTSET),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL.upper()),
    )

    # Outbound provider calls and SQL are only interesting when debugging
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "arq.jobs"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    if settings.ENVIRONMENT != "development":
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a logger instance with the given name.

    Example:
        logger = get_logger(__name__)
        logger.info("session_created", identity_id=123, device="Firefox on macOS")
    """
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))


def set_request_context(request_id: str) -> None:
    request_id_ctx.set(request_id)


def set_identity_context(identity_id: int) -> None:
    """Attach the authenticated identity to all subsequent logs of this request."""
    identity_id_ctx.set(identity_id)


def clear_request_context() -> None:
    request_id_ctx.set(None)
    identity_id_ctx.set(None)


def bind_context(**kwargs: Any) -> None:
    """
    Bind extra fields to every later log line in this context (background jobs).

    Example:
        bind_context(task="session_cleanup")
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)
