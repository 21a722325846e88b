"""Test utilities and fixtures for Test Runner Agent tests."""

import os
import sys
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from config import RunnerConfig
from models import ActionCommand

# Every variable the runner reads; cleared so the host environment cannot leak in.
RUNNER_ENV_VARS = [
    "RUN_ID",
    "TUSK_URL",
    "AUTH_TOKEN",
    "TEST_SCRIPT",
    "LINT_SCRIPT",
    "COVERAGE_SCRIPT",
    "COMMIT_SHA",
    "APP_DIR",
    "TEST_FRAMEWORK",
    "TEST_FILE_REGEX",
    "POLLING_DURATION",
    "POLLING_INTERVAL",
    "MAX_CONCURRENCY",
    "RUNNER_INDEX",
    "WORKSPACE_ROOT",
    "GITHUB_WORKSPACE",
    "LOG_LEVEL",
    "LOG_JSON",
]


@pytest.fixture
def runner_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> Dict[str, str]:
    """Set a minimal, valid runner environment."""
    for name in list(os.environ):
        if name.upper() in RUNNER_ENV_VARS or name.upper().startswith("INPUT_"):
            monkeypatch.delenv(name, raising=False)

    env = {
        "RUN_ID": "run-test-001",
        "TUSK_URL": "http://control-plane.test/api/",
        "AUTH_TOKEN": "test-token",
        "TEST_SCRIPT": "pytest {{file}}",
        "WORKSPACE_ROOT": str(tmp_path),
    }
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    return env


@pytest.fixture
def runner_config(runner_env: Dict[str, str]) -> RunnerConfig:
    """Create a runner configuration for testing, loaded from the environment."""
    return RunnerConfig()


@pytest.fixture
def fast_config(runner_config: RunnerConfig) -> RunnerConfig:
    """A configuration with every wait shortened for loop tests."""
    return runner_config.model_copy(
        update={
            "polling_interval": 0,
            "poll_error_delay": 0,
            "control_plane_retry_backoff_base": 0,
            "shutdown_grace_period": 10,
        }
    )


@pytest.fixture
def mock_control_plane_client() -> AsyncMock:
    """Create a mock ControlPlane client."""
    mock_client = AsyncMock()
    mock_client.start = AsyncMock()
    mock_client.stop = AsyncMock()
    mock_client.poll_commands = AsyncMock(return_value=[])
    mock_client.ack_command = AsyncMock(return_value=True)
    mock_client.send_command_result = AsyncMock(return_value=True)
    mock_client.get_testing_sandbox_config = AsyncMock(return_value=None)
    return mock_client


def create_file_command(
    command_id: str,
    action: str = "read",
    file_path: str = "src/app.py",
    **data: Any,
) -> ActionCommand:
    """Create a file command as it arrives from the ControlPlane."""
    return ActionCommand.model_validate(
        {
            "id": command_id,
            "command": {
                "type": "file",
                "action": action,
                "data": {"filePath": file_path, **data},
            },
        }
    )


def create_runner_command(
    command_id: str, action: str = "script", script: Optional[str] = None
) -> ActionCommand:
    """Create a runner command as it arrives from the ControlPlane."""
    payload: Dict[str, Any] = {"type": "runner", "action": action}
    if script is not None:
        payload["data"] = {"script": script}
    return ActionCommand.model_validate({"id": command_id, "command": payload})
