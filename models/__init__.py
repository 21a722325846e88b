"""Data models for the Test Runner Agent.

This module contains all Pydantic models used throughout the application,
ensuring strict type safety and runtime validation."""

# Import all enums
from .enums import CommandType, FileAction, RunnerAction, ScriptKind, StopReason

# Import command models
from .commands import (
    ActionCommand,
    CommandInfo,
    CommandOutcome,
    CommandResult,
    FileCommandData,
    FileCommandInfo,
    RunnerCommandData,
    RunnerCommandInfo,
    ScriptData,
    UnknownCommandInfo,
    epoch_millis,
)

# Import run-level models
from .execution import (
    LimiterCounts,
    RunnerMetadata,
    TestExecutionConfig,
    TestingSandboxConfigInfo,
)

__all__ = [
    # Enums
    "CommandType",
    "FileAction",
    "RunnerAction",
    "ScriptKind",
    "StopReason",
    # Command models
    "ActionCommand",
    "CommandInfo",
    "CommandOutcome",
    "CommandResult",
    "FileCommandData",
    "FileCommandInfo",
    "RunnerCommandData",
    "RunnerCommandInfo",
    "ScriptData",
    "UnknownCommandInfo",
    "epoch_millis",
    # Run-level models
    "LimiterCounts",
    "RunnerMetadata",
    "TestExecutionConfig",
    "TestingSandboxConfigInfo",
]
