"""Structured logging for the VentyLab backend.

structlog on top of the stdlib logging tree:
- coloured console output while developing, JSON lines in production
- correlation IDs bound per request by the middleware
- secrets (passwords, tokens, provider API keys) scrubbed before rendering
"""
import logging
import sys
from contextvars import ContextVar
from uuid import uuid4

import structlog
from structlog.types import EventDict, Processor

SERVICE_NAME = "ventylab-backend"
SERVICE_VERSION = "0.1.0"

SENSITIVE_KEYS = frozenset({
    "password",
    "hashed_password",
    "token",
    "access_token",
    "secret",
    "api_key",
    "authorization",
    "cookie",
})

# Extra request-scoped fields that don't go through structlog.contextvars
request_context: ContextVar[dict] = ContextVar("request_context", default={})


def _add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    ctx = request_context.get()
    if ctx:
        event_dict.update(ctx)
    return event_dict


def _redact(obj, depth: int = 0):
    if depth > 5:
        return obj
    if isinstance(obj, dict):
        return {
            k: "[REDACTED]" if str(k).lower() in SENSITIVE_KEYS else _redact(v, depth + 1)
            for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [_redact(item, depth + 1) for item in obj]
    return obj


def _censor_sensitive_keys(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    return _redact(event_dict)


def _add_service_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict.setdefault("version", SERVICE_VERSION)
    return event_dict


def get_shared_processors() -> list[Processor]:
    """Processors shared by the structlog chain and the stdlib formatter."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _add_request_context,
        _add_service_info,
        _censor_sensitive_keys,
    ]


def configure_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_sql: bool = False,
) -> None:
    """Configure structlog and route stdlib loggers through the same renderer.

    Args:
        level: Root log level name.
        json_logs: Emit JSON lines instead of coloured console output.
        log_sql: Let SQLAlchemy engine statements through at DEBUG.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    shared_processors = get_shared_processors()

    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=True,
            exception_formatter=structlog.dev.plain_traceback,
        )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    for logger_name in ["uvicorn", "uvicorn.error"]:
        logging.getLogger(logger_name).handlers = []

    # Noisy client libraries used by the AI providers
    for logger_name in ["uvicorn.access", "httpcore", "httpx", "openai", "anthropic"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.DEBUG if log_sql else logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def generate_correlation_id() -> str:
    """Short ID used to tie together log lines of one request."""
    return str(uuid4())[:8]


def bind_context(**kwargs) -> None:
    """Bind key-value pairs to every following log line in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


class LoggerRegistry:
    """Per-domain loggers, namespaced under ``ventylab.``."""

    _loggers: dict[str, structlog.stdlib.BoundLogger] = {}

    @classmethod
    def get(cls, name: str) -> structlog.stdlib.BoundLogger:
        if name not in cls._loggers:
            cls._loggers[name] = get_logger(f"ventylab.{name}")
        return cls._loggers[name]


def api_logger() -> structlog.stdlib.BoundLogger:
    return LoggerRegistry.get("api")


def engine_logger() -> structlog.stdlib.BoundLogger:
    return LoggerRegistry.get("engine")


def db_logger() -> structlog.stdlib.BoundLogger:
    return LoggerRegistry.get("db")


def auth_logger() -> structlog.stdlib.BoundLogger:
    return LoggerRegistry.get("auth")


def progress_logger() -> structlog.stdlib.BoundLogger:
    """Logger for progress tracking and aggregation."""
    return LoggerRegistry.get("progress")


def ai_logger() -> structlog.stdlib.BoundLogger:
    """Logger for the AI dispatcher and its providers."""
    return LoggerRegistry.get("ai")
