"""
Structlog configuration.
"""
import logging
import json
import structlog
from structlog.processors import TimeStamper, add_log_level, JSONRenderer
from structlog.dev import ConsoleRenderer
from structlog.contextvars import merge_contextvars
from structlog.stdlib import ProcessorFormatter
from typing import Any, List

from core.config import settings


_REDACTED = "***"
SENSITIVE_KEYS = frozenset({"PWD", "SIGNATURE", "USER", "password", "secret_key", "client_secret"})


def redact(params: dict) -> dict:
    """Copy of ``params`` with credential values masked, for logging request bodies."""
    return {k: (_REDACTED if k in SENSITIVE_KEYS and v else v) for k, v in params.items()}


def get_renderer() -> Any:
    """Console in DEBUG, JSON otherwise."""
    if settings.DEBUG:
        return ConsoleRenderer(colors=True)

    # structlog passes default/sort_keys through to the serializer
    def _dumps(obj, default=None, **kwargs):
        return json.dumps(obj, ensure_ascii=False, default=default, **kwargs)
    return JSONRenderer(serializer=_dumps)


def _log_level() -> int:
    if settings.LOG_LEVEL:
        return logging.getLevelName(settings.LOG_LEVEL.upper())
    return logging.DEBUG if settings.DEBUG else logging.INFO


def configure_logging() -> None:
    """Configure structlog and route stdlib logging through the same processors."""
    timestamper = TimeStamper(fmt="iso")

    shared_pre_chain: List[Any] = [
        merge_contextvars,
        add_log_level,
        timestamper,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[
            *shared_pre_chain,
            ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = ProcessorFormatter(
        foreign_pre_chain=shared_pre_chain,
        processors=[
            ProcessorFormatter.remove_processors_meta,
            get_renderer(),
        ],
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(_log_level())


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


configure_logging()
