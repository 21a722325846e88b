"""Logging utilities for the Test Runner Agent.

structlog is layered over stdlib logging and renders either JSON lines or
log4j-style console lines. Every line carries the correlation ID of the poll
cycle and, inside a command job, the ID of the command being executed.
"""

import json
import logging
import os
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

correlation_id_context: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
command_id_context: ContextVar[Optional[str]] = ContextVar("command_id", default=None)

# Chatty below WARNING; their request lines duplicate our own.
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def _render_log4j_line(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> str:
    """Render ``timestamp [level]: message {json_context}``."""
    head = "{} [{}]: {}".format(
        event_dict.pop("timestamp", ""),
        event_dict.pop("level", "info"),
        event_dict.pop("event", ""),
    )
    event_dict.pop("logger", None)
    if not event_dict:
        return head
    return head + " " + json.dumps(event_dict, sort_keys=True, separators=(",", ":"), default=str)


def _add_run_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Stamp process, host and the IDs bound to the current context."""
    event_dict["pid"] = os.getpid()
    event_dict["hostname"] = os.uname().nodename
    for key, context in (("correlation_id", correlation_id_context), ("command_id", command_id_context)):
        value = context.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a new correlation scope (one per poll cycle) and return its ID."""
    correlation_id = correlation_id or str(uuid.uuid4())
    correlation_id_context.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    return correlation_id_context.get()


def clear_correlation_id() -> None:
    correlation_id_context.set(None)


def bind_command_id(command_id: Optional[str]) -> None:
    """Tag all log lines of the current task with a command ID.

    Tasks copy the context they are created in, so binding inside a command
    job never leaks into the poll loop or sibling jobs.
    """
    command_id_context.set(command_id)


def get_command_id() -> Optional[str]:
    return command_id_context.get()


def _processors(json_output: bool, include_system_context: bool) -> List[Any]:
    processors: List[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if include_system_context:
        processors.append(_add_run_context)
    processors.append(structlog.processors.UnicodeDecoder())
    processors.append(
        structlog.processors.JSONRenderer(sort_keys=True, default=str)
        if json_output
        else _render_log4j_line
    )
    return processors


def configure_logging(log_level: str = "INFO", json_output: bool = True, include_system_context: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: Minimum level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: JSON lines when True, log4j-style lines otherwise.
        include_system_context: Add pid, hostname and the bound IDs to every line.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=_processors(json_output, include_system_context),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str, **initial_context: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    return logger.bind(**initial_context) if initial_context else logger


def create_contextual_logger(
    name: str,
    correlation_id: Optional[str] = None,
    **context: Any
) -> structlog.stdlib.BoundLogger:
    """Logger for a service, with its static context bound.

    Without an explicit ``correlation_id`` the ID of the context active when
    a line is emitted is used, which is what long-lived services want.
    """
    if correlation_id:
        context["correlation_id"] = correlation_id
    return get_logger(name, **context)


def log_exception(
    logger: structlog.stdlib.BoundLogger,
    exception: BaseException,
    message: str = "An error occurred",
    **additional_context: Any
) -> None:
    """Log ``exception`` at error level with its type, message and traceback."""
    logger.error(
        message,
        exc_info=exception,
        exception_type=type(exception).__name__,
        exception_message=str(exception),
        **additional_context,
    )
