"""End-to-end integration tests for the Test Runner Agent.

These wire the real client, executor, limiter and processor together; only
the ControlPlane itself is replaced, by an in-memory fake behind
``httpx.MockTransport``.
"""

import functools
import json
from collections import deque
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import patch

import httpx
import pytest

import main
from models import RunnerMetadata, ScriptData, StopReason
from services import (
    ActionExecutor,
    CommandProcessor,
    ConcurrencyLimiter,
    ControlPlaneClient,
    resolve_max_concurrency,
)


def file_command(command_id: str, action: str, file_path: str, **data: Any) -> Dict[str, Any]:
    return {
        "id": command_id,
        "createdAt": "2024-01-15T10:00:00Z",
        "command": {"type": "file", "action": action, "data": {"filePath": file_path, **data}},
    }


def runner_command(command_id: str, action: str, **data: Any) -> Dict[str, Any]:
    command: Dict[str, Any] = {"type": "runner", "action": action}
    if data:
        command["data"] = data
    return {"id": command_id, "command": command}


class FakeControlPlane:
    """In-memory ControlPlane serving queued poll batches."""

    def __init__(self, batches: List[List[Dict[str, Any]]], max_concurrency: Any = 2) -> None:
        self.batches = deque(batches)
        self.max_concurrency = max_concurrency
        self.acks: List[str] = []
        self.results: Dict[str, Dict[str, Any]] = {}
        self.unauthorized = False
        self.reject_results = False

    def handle(self, request: httpx.Request) -> httpx.Response:
        if self.unauthorized:
            return httpx.Response(401, text="invalid token")

        path = request.url.path
        if path.endswith("/test-execution-config"):
            return httpx.Response(
                200,
                json={
                    "testingSandboxConfigId": "sandbox-1",
                    "testExecutionConfig": {"maxConcurrency": self.max_concurrency},
                },
            )
        if path.endswith("/poll-commands"):
            assert request.url.params["testingSandboxConfigId"] == "sandbox-1"
            commands = self.batches.popleft() if self.batches else []
            return httpx.Response(200, json={"commands": commands})
        if path.endswith("/ack-command"):
            self.acks.append(json.loads(request.content)["commandId"])
            return httpx.Response(200, json={})
        if path.endswith("/command-result"):
            if self.reject_results:
                return httpx.Response(401, text="token revoked")
            result = json.loads(request.content)["result"]
            self.results[result["id"]] = result["result"]
            return httpx.Response(200, json={})
        return httpx.Response(404)


@pytest.fixture
def workspace(runner_env) -> Path:
    root = Path(runner_env["WORKSPACE_ROOT"])
    (root / "service" / "src").mkdir(parents=True)
    (root / "service" / "src" / "existing.py").write_text("VALUE = 1\n")
    return root


def command_batches() -> List[List[Dict[str, Any]]]:
    return [
        [
            file_command("cmd-write", "write", "service/src/new.py", fileContents="NEW = 2\n", appDir="service"),
            file_command("cmd-read", "read", "src/existing.py", appDir="service"),
            file_command("cmd-test", "test", "service/tests/test_existing.py", appDir="service"),
        ],
        [
            file_command("cmd-read", "read", "src/existing.py", appDir="service"),
            runner_command("cmd-script", "script", script="echo from-script"),
            {"id": "cmd-unknown", "command": {"type": "docker", "action": "run"}},
        ],
        [
            runner_command("cmd-stop", "terminate"),
            file_command("cmd-after", "delete", "src/existing.py", appDir="service"),
        ],
    ]


class TestEndToEndIntegration:
    """Integration tests for the poll, execute and report flow."""

    @pytest.mark.asyncio
    async def test_full_run(self, fast_config, workspace) -> None:
        """Test a run from the first poll to the terminate command."""
        control_plane = FakeControlPlane(command_batches())
        transport = httpx.MockTransport(control_plane.handle)
        config = fast_config.model_copy(update={"test_script": "echo testing {{file}}"})

        async with ControlPlaneClient(
            config, RunnerMetadata.model_construct(runner_index="0"), transport=transport
        ) as client:
            sandbox = await client.get_testing_sandbox_config(config.run_id)
            assert sandbox is not None
            limiter = ConcurrencyLimiter(
                resolve_max_concurrency(config.max_concurrency, sandbox.test_execution_config)
            )
            executor = ActionExecutor(
                ScriptData(test=config.test_script), workspace_root=config.workspace_root
            )
            processor = CommandProcessor(
                config,
                client,
                executor,
                limiter,
                testing_sandbox_config_id=sandbox.testing_sandbox_config_id,
            )

            reason = await processor.run()
            assert await processor.drain() == 0

        assert reason == StopReason.TERMINATE_COMMAND
        assert limiter.max_concurrency == 2

        assert control_plane.acks == [
            "cmd-write",
            "cmd-read",
            "cmd-test",
            "cmd-read",
            "cmd-script",
            "cmd-unknown",
            "cmd-stop",
        ]
        assert set(control_plane.results) == {
            "cmd-write",
            "cmd-read",
            "cmd-test",
            "cmd-script",
            "cmd-unknown",
        }

        results = control_plane.results
        assert (workspace / "service" / "src" / "new.py").read_text() == "NEW = 2\n"
        assert results["cmd-write"]["exitCode"] == 0
        assert results["cmd-read"]["fileContents"] == "VALUE = 1\n"
        assert results["cmd-test"]["stdout"] == "testing tests/test_existing.py\n"
        assert results["cmd-script"] == {
            "type": "runner",
            "completedAt": results["cmd-script"]["completedAt"],
            "stdout": "from-script\n",
            "stderr": "",
            "exitCode": 0,
        }
        assert results["cmd-unknown"]["exitCode"] == 1
        assert results["cmd-unknown"]["error"].startswith("Unknown command type")
        assert (workspace / "service" / "src" / "existing.py").exists()

    @pytest.mark.asyncio
    async def test_main_run_exit_codes(self, fast_config, workspace) -> None:
        """Test the entry point returns 0 after terminate and 1 on auth failure."""
        config = fast_config.model_copy(update={"test_script": "echo testing {{file}}"})
        control_plane = FakeControlPlane(command_batches())
        client_factory = functools.partial(
            ControlPlaneClient, transport=httpx.MockTransport(control_plane.handle)
        )

        with patch("main.ControlPlaneClient", client_factory):
            assert await main.run(config) == 0

            control_plane.unauthorized = True
            assert await main.run(config) == 1

        assert "cmd-stop" in control_plane.acks

    @pytest.mark.asyncio
    async def test_main_run_poll_errors(self, fast_config, workspace) -> None:
        """Test that an unreachable ControlPlane exhausts the error budget and exits 1."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client_factory = functools.partial(ControlPlaneClient, transport=httpx.MockTransport(handler))

        with patch("main.ControlPlaneClient", client_factory):
            assert await main.run(fast_config) == 1

    def test_main_invalid_config(self, runner_env, monkeypatch) -> None:
        """Test that invalid startup configuration exits with status 1."""
        monkeypatch.delenv("AUTH_TOKEN")

        with pytest.raises(SystemExit) as exc_info:
            main.main()

        assert exc_info.value.code == 1

    @pytest.mark.asyncio
    async def test_main_run_auth_failure_while_draining(self, fast_config, workspace) -> None:
        """Test that a result rejected with 401 after terminate still exits 1."""
        control_plane = FakeControlPlane(
            [
                [
                    runner_command("cmd-slow", "script", script="sleep 0.2; echo done"),
                    runner_command("cmd-stop", "terminate"),
                ]
            ]
        )
        control_plane.reject_results = True
        client_factory = functools.partial(
            ControlPlaneClient, transport=httpx.MockTransport(control_plane.handle)
        )

        with patch("main.ControlPlaneClient", client_factory):
            assert await main.run(fast_config) == 1

        assert control_plane.acks == ["cmd-slow", "cmd-stop"]
        assert control_plane.results == {}
