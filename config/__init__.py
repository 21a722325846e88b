"""Configuration management for the Test Runner Agent.

This module handles all configuration loading and validation using Pydantic BaseSettings.
Configuration is loaded from environment variables and .env files.
"""

from .config import (
    ControlPlaneConfig,
    ExecutionConfig,
    MonitoringConfig,
    PollingConfig,
    RunnerConfig,
    ScriptConfig,
    str_to_bool,
)


def load_config() -> RunnerConfig:
    """Load and validate runner configuration."""
    return RunnerConfig()


__all__ = [
    "RunnerConfig",
    "ControlPlaneConfig",
    "ScriptConfig",
    "PollingConfig",
    "ExecutionConfig",
    "MonitoringConfig",
    "load_config",
    "str_to_bool",
]
