"""Service layer for the Test Runner Agent."""

from .action_executor import ActionExecutor
from .command_processor import CommandProcessor
from .concurrency_limiter import ConcurrencyLimiter, resolve_max_concurrency
from .control_plane_client import ControlPlaneClient
from .exceptions import ActionError, AuthenticationError, ControlPlaneError, ScriptSpawnError
from .script_templater import ScriptTemplater

__all__ = [
    "ActionExecutor",
    "CommandProcessor",
    "ConcurrencyLimiter",
    "resolve_max_concurrency",
    "ControlPlaneClient",
    "ScriptTemplater",
    "ActionError",
    "AuthenticationError",
    "ControlPlaneError",
    "ScriptSpawnError",
]
