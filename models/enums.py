"""Enumeration types for Test Runner Agent models."""

from enum import Enum


class CommandType(str, Enum):
    """Discriminant of a command payload."""

    FILE = "file"
    RUNNER = "runner"


class FileAction(str, Enum):
    """Actions that operate on a file inside the workspace."""

    READ = "read"
    WRITE = "write"
    LINT = "lint"
    TEST = "test"
    LINT_READ = "lint_read"
    WRITE_LINT_READ = "write_lint_read"
    COVERAGE = "coverage"
    DELETE = "delete"


class RunnerAction(str, Enum):
    """Actions addressed to the runner itself."""

    SCRIPT = "script"
    TERMINATE = "terminate"


class ScriptKind(str, Enum):
    """Class of child process, which decides its timeout."""

    LINT = "lint"
    TEST = "test"
    COVERAGE = "coverage"
    SCRIPT = "script"


class StopReason(str, Enum):
    """Why the command dispatch loop ended."""

    DURATION_ELAPSED = "duration_elapsed"
    INACTIVITY_TIMEOUT = "inactivity_timeout"
    TERMINATE_COMMAND = "terminate_command"
    POLL_ERRORS_EXHAUSTED = "poll_errors_exhausted"
    SHUTDOWN_SIGNAL = "shutdown_signal"
