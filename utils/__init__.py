"""Utility modules for the Test Runner Agent."""

from .logging import (
    bind_command_id,
    clear_correlation_id,
    configure_logging,
    create_contextual_logger,
    get_command_id,
    get_correlation_id,
    get_logger,
    log_exception,
    set_correlation_id,
)
from .connection_state import ConnectionStateManager

__all__ = [
    "configure_logging",
    "create_contextual_logger",
    "get_logger",
    "log_exception",
    "set_correlation_id",
    "get_correlation_id",
    "clear_correlation_id",
    "bind_command_id",
    "get_command_id",
    "ConnectionStateManager",
]
