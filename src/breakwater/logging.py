"""Structured logging for circuit breakers.

Breakers accept either a structlog logger or a plain ``logging.Logger``. The
``log_*`` helpers pass event fields as keywords to the former and as ``extra``
to the latter, so breaker fields never collide with ``LogRecord`` attributes
such as ``name`` or ``message``.
"""

from __future__ import annotations

import logging
import sys
from typing import Literal, Protocol

import structlog
from structlog.typing import EventDict, Processor

LOGGER_NAMESPACE = "breakwater"
BREAKER_EVENT_PREFIX = "circuit_breaker_"

_LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_StdlibLogger = logging.Logger | logging.LoggerAdapter[logging.Logger]
_Level = Literal["info", "warning", "error", "exception"]


class StructuredLogger(Protocol):
    """Logger protocol for structured event logging with keyword fields."""

    def info(self, event: str, **kwargs: object) -> None: ...

    def warning(self, event: str, **kwargs: object) -> None: ...

    def error(self, event: str, **kwargs: object) -> None: ...

    def exception(self, event: str, **kwargs: object) -> None: ...


BreakerLogger = StructuredLogger | _StdlibLogger


def get_log_level_value(level: str) -> int:
    """Map a level name such as ``" debug "`` to its stdlib constant."""
    normalized = level.strip().upper()
    if normalized not in _LEVEL_NAMES:
        choices = ", ".join(sorted(_LEVEL_NAMES))
        raise ValueError(f"log_level must be one of: {choices}")
    return logging.getLevelNamesMapping()[normalized]


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return the default structlog logger used by breaker components."""
    return structlog.stdlib.get_logger(name)


def set_breaker_log_level(level: str) -> int:
    """Set the threshold for every logger under ``breakwater``.

    Only the package namespace changes; the host's root logger is untouched.
    """
    level_value = get_log_level_value(level)
    logging.getLogger(LOGGER_NAMESPACE).setLevel(level_value)
    return level_value


def _emit(
    logger: BreakerLogger,
    level: _Level,
    event: str,
    fields: dict[str, object],
) -> None:
    method = getattr(logger, level)
    if isinstance(logger, (logging.Logger, logging.LoggerAdapter)):
        method(event, extra=fields)
    else:
        method(event, **fields)


def log_info(logger: BreakerLogger, event: str, **fields: object) -> None:
    _emit(logger, "info", event, fields)


def log_warning(logger: BreakerLogger, event: str, **fields: object) -> None:
    _emit(logger, "warning", event, fields)


def log_error(logger: BreakerLogger, event: str, **fields: object) -> None:
    _emit(logger, "error", event, fields)


def log_exception(logger: BreakerLogger, event: str, **fields: object) -> None:
    """Log at error level with the active exception attached."""
    _emit(logger, "exception", event, fields)


def tag_breaker_events(_: object, __: str, event_dict: EventDict) -> EventDict:
    """Add ``component="circuit_breaker"`` to breaker events."""
    event = event_dict.get("event")
    if isinstance(event, str) and event.startswith(BREAKER_EVENT_PREFIX):
        event_dict.setdefault("component", "circuit_breaker")
    return event_dict


def _renderer(json_output: bool | None) -> Processor:
    if json_output is None:
        json_output = not sys.stderr.isatty()
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def configure_structlog(
    *,
    log_level: str,
    json_output: bool | None = None,
) -> structlog.stdlib.BoundLogger:
    """Route structlog and stdlib records through one stderr handler.

    Intended for processes that host breakers and have no logging setup of
    their own. ``json_output`` defaults to JSON unless stderr is a terminal.
    Calling it again replaces the previous handler.
    """
    level_value = get_log_level_value(log_level)
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        tag_breaker_events,
        timestamper,
    ]

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(json_output),
            ],
        )
    )
    logging.basicConfig(
        format="%(message)s",
        handlers=[handler],
        level=level_value,
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return structlog.stdlib.get_logger(LOGGER_NAMESPACE)
