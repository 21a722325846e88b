"""Configuration classes for the Test Runner Agent.

This module contains all configuration classes organized by domain.
Configuration is loaded from environment variables and .env files. Every
workflow input is accepted both under a plain name (``RUN_ID``) and under
the name GitHub Actions exports it as (``INPUT_RUNID``).
"""

import os
from typing import Any, Optional

from pydantic import AliasChoices, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _input_alias(plain: str, action_input: str) -> AliasChoices:
    return AliasChoices(plain, f"INPUT_{action_input.upper()}")


def str_to_bool(value: Any) -> bool:
    """Convert various string representations to boolean values.

    Examples:
        >>> str_to_bool("true")
        True
        >>> str_to_bool("0")
        False
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes", "on", "enabled")
    return bool(value)


class ControlPlaneConfig(BaseSettings):
    """ControlPlane configuration settings."""

    app_name: str = "Test Runner Agent"
    app_version: str = "1.0.0"

    run_id: str = Field(..., validation_alias=_input_alias("RUN_ID", "runId"))
    control_plane_url: str = Field(..., validation_alias=_input_alias("TUSK_URL", "tuskUrl"))
    auth_token: str = Field(..., validation_alias=_input_alias("AUTH_TOKEN", "authToken"))
    control_plane_timeout: float = 10.0
    control_plane_retry_attempts: int = 3
    control_plane_retry_backoff_base: float = 1.0

    @field_validator("control_plane_url")
    @classmethod
    def validate_control_plane_url(cls, v: str) -> str:
        """Ensure ControlPlane URL is properly formatted."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("control_plane_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("auth_token")
    @classmethod
    def validate_auth_token(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("auth_token must not be empty")
        return v


class ScriptConfig(BaseSettings):
    """Script templates and repository layout settings."""

    test_script: str = Field(..., validation_alias=_input_alias("TEST_SCRIPT", "testScript"))
    lint_script: Optional[str] = Field(
        default=None, validation_alias=_input_alias("LINT_SCRIPT", "lintScript")
    )
    coverage_script: Optional[str] = Field(
        default=None, validation_alias=_input_alias("COVERAGE_SCRIPT", "coverageScript")
    )

    # Informational inputs, logged at startup
    commit_sha: Optional[str] = Field(
        default=None, validation_alias=_input_alias("COMMIT_SHA", "commitSha")
    )
    app_dir: Optional[str] = Field(default=None, validation_alias=_input_alias("APP_DIR", "appDir"))
    test_framework: Optional[str] = Field(
        default=None, validation_alias=_input_alias("TEST_FRAMEWORK", "testFramework")
    )
    test_file_regex: Optional[str] = Field(
        default=None, validation_alias=_input_alias("TEST_FILE_REGEX", "testFileRegex")
    )

    workspace_root: str = Field(
        default_factory=os.getcwd,
        validation_alias=AliasChoices("WORKSPACE_ROOT", "GITHUB_WORKSPACE"),
    )

    @field_validator(
        "lint_script",
        "coverage_script",
        "commit_sha",
        "app_dir",
        "test_framework",
        "test_file_regex",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        """Workflow inputs that are not set arrive as empty strings."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("test_script")
    @classmethod
    def validate_test_script(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("test_script must not be empty")
        return v


class PollingConfig(BaseSettings):
    """Polling loop settings."""

    polling_duration: int = Field(
        default=7200, validation_alias=_input_alias("POLLING_DURATION", "pollingDuration")
    )
    polling_interval: float = Field(
        default=2, validation_alias=_input_alias("POLLING_INTERVAL", "pollingInterval")
    )
    inactivity_timeout: float = 600
    max_consecutive_poll_errors: int = 5
    poll_error_delay: float = 5
    shutdown_grace_period: float = 30

    @field_validator("polling_duration", "polling_interval", mode="before")
    @classmethod
    def blank_to_default(cls, v: Any, info: ValidationInfo) -> Any:
        if isinstance(v, str) and not v.strip():
            return cls.model_fields[info.field_name].default
        return v

    @field_validator("polling_duration", "polling_interval")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("polling settings must not be negative")
        return v


class ExecutionConfig(BaseSettings):
    """Command execution settings."""

    # Kept as raw text: an invalid value is a warning, not a startup failure.
    max_concurrency: Optional[str] = Field(
        default=None, validation_alias=_input_alias("MAX_CONCURRENCY", "maxConcurrency")
    )
    runner_index: Optional[str] = Field(
        default=None, validation_alias=_input_alias("RUNNER_INDEX", "runnerIndex")
    )

    @field_validator("max_concurrency", "runner_index", mode="before")
    @classmethod
    def normalize_optional_text(cls, v: Any) -> Any:
        if v is None:
            return None
        text = str(v).strip()
        return text or None


class MonitoringConfig(BaseSettings):
    """Monitoring configuration settings."""

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("log_json", mode="before")
    @classmethod
    def validate_log_json(cls, v: Any) -> bool:
        """Convert string boolean values to actual boolean."""
        return str_to_bool(v)


class RunnerConfig(
    ControlPlaneConfig,
    ScriptConfig,
    PollingConfig,
    ExecutionConfig,
    MonitoringConfig,
    BaseSettings,
):
    """Main runner configuration that combines all configuration domains."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )
