"""ControlPlane client service for the Test Runner Agent.

This module handles all communication with the ControlPlane API: polling for
commands, acknowledging them, fetching the execution config and reporting
command results.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx
from httpx import AsyncClient
from pydantic import ValidationError

from config import RunnerConfig
from models import ActionCommand, CommandResult, RunnerMetadata, TestingSandboxConfigInfo
from utils import create_contextual_logger
from .exceptions import AuthenticationError, ControlPlaneError


def _flatten_params(params: Dict[str, Any]) -> Dict[str, str]:
    """Serialize nested query parameters in bracket notation (``a[b]=c``), skipping unset values."""
    flat: Dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, dict):
            for sub_key, sub_value in _flatten_params(value).items():
                head, _, rest = sub_key.partition("[")
                flat[f"{key}[{head}]" + (f"[{rest}" if rest else "")] = sub_value
        else:
            flat[key] = str(value)
    return flat


def retry_reason(error: Exception) -> Optional[str]:
    """Return why ``error`` is worth retrying, or None when it is not."""
    if isinstance(error, AuthenticationError):
        return None
    if isinstance(error, ControlPlaneError) and error.status_code is not None:
        if error.status_code >= 500:
            return f"status code {error.status_code}"
        return None
    cause = error.__cause__ if isinstance(error, ControlPlaneError) else error
    if isinstance(cause, httpx.TimeoutException):
        return f"timeout ({type(cause).__name__})"
    if isinstance(cause, httpx.NetworkError):
        return f"network error ({type(cause).__name__})"
    return None


class ControlPlaneClient:
    """Async client for the ControlPlane API."""

    def __init__(
        self,
        config: RunnerConfig,
        runner_metadata: Optional[RunnerMetadata] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.runner_metadata = runner_metadata or RunnerMetadata()
        self.logger = create_contextual_logger(__name__, service="control_plane_client")
        self._transport = transport
        self._client: Optional[AsyncClient] = None

    async def start(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._client is not None:
            return
        self._client = AsyncClient(
            base_url=self.config.control_plane_url,
            timeout=self.config.control_plane_timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.config.auth_token}",
                "Content-Type": "application/json",
                "User-Agent": f"TestRunner-Agent/{self.config.app_version}",
            },
        )

    async def stop(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ControlPlaneClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def _send(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send one request, mapping failures onto ControlPlaneError."""
        if self._client is None:
            await self.start()
        assert self._client is not None

        try:
            response = await self._client.request(
                method=method.upper(),
                url=endpoint,
                json=data,
                params=_flatten_params(params) if params else None,
            )
        except httpx.HTTPError as e:
            raise ControlPlaneError(f"{method.upper()} {endpoint} failed: {e!r}") from e

        if response.status_code == 401:
            raise AuthenticationError(
                f"{method.upper()} {endpoint} unauthorized, check the auth token",
                status_code=response.status_code,
                body=response.text,
            )
        if response.is_error:
            raise ControlPlaneError(
                f"{method.upper()} {endpoint} failed",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request, retrying transient failures with exponential backoff."""
        max_retries = self.config.control_plane_retry_attempts
        for attempt in range(max_retries + 1):
            try:
                return await self._send(method, endpoint, data=data, params=params)
            except ControlPlaneError as e:
                reason = retry_reason(e)
                if reason is None or attempt >= max_retries:
                    raise
                delay = self.config.control_plane_retry_backoff_base * (2 ** attempt)
                self.logger.info(
                    f"Request failed with {reason}, retrying in {delay:.1f}s",
                    endpoint=endpoint,
                    attempt=attempt + 1,
                    max_retries=max_retries,
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")

    async def poll_commands(
        self, run_id: str, testing_sandbox_config_id: Optional[str] = None
    ) -> List[ActionCommand]:
        """Poll for pending commands. A request timeout means there is no work yet."""
        params = {
            "runId": run_id,
            "testingSandboxConfigId": testing_sandbox_config_id,
            "runnerMetadata": self.runner_metadata.to_wire(),
        }
        try:
            response = await self._send("GET", "/poll-commands", params=params)
        except ControlPlaneError as e:
            if isinstance(e.__cause__, httpx.TimeoutException):
                self.logger.debug("Polling timeout (expected)")
                return []
            raise

        payload = response.json() or {}
        commands: List[ActionCommand] = []
        for raw in payload.get("commands") or []:
            try:
                commands.append(ActionCommand.model_validate(raw))
            except ValidationError as e:
                # Without an ID the command can be neither acked nor reported.
                self.logger.warning("Dropping malformed command", error=str(e), raw=raw)
        return commands

    async def ack_command(self, run_id: str, command_id: str) -> bool:
        """Acknowledge receipt of a command. Safe to repeat for the same ID."""
        body = {
            "runId": run_id,
            "commandId": command_id,
            "runnerMetadata": self.runner_metadata.to_wire(),
        }
        try:
            response = await self._make_request("POST", "/ack-command", data=body)
        except AuthenticationError:
            raise
        except ControlPlaneError as e:
            self.logger.warning("Failed to ack command", command_id=command_id, error=str(e))
            return False

        if not response.is_success:
            self.logger.warning(
                "Failed to ack command, server is probably not running",
                command_id=command_id,
                status_code=response.status_code,
            )
            return False
        self.logger.info("Successfully acked command", command_id=command_id)
        return True

    async def send_command_result(self, run_id: str, result: CommandResult) -> bool:
        """Report a finished command."""
        body = {
            "runId": run_id,
            "result": result.to_wire(),
            "runnerMetadata": self.runner_metadata.to_wire(),
        }
        try:
            response = await self._make_request("POST", "/command-result", data=body)
        except AuthenticationError:
            raise
        except ControlPlaneError as e:
            self.logger.warning("Failed to send command result", command_id=result.id, error=str(e))
            return False

        if not response.is_success:
            self.logger.warning(
                "Failed to send command result, server is probably not running",
                command_id=result.id,
                status_code=response.status_code,
                body=response.text,
            )
            return False
        self.logger.info("Successfully sent command result", command_id=result.id)
        return True

    async def get_testing_sandbox_config(self, run_id: str) -> Optional[TestingSandboxConfigInfo]:
        """Fetch the execution config for the run. Best effort: failures yield None."""
        params = {"runId": run_id, "runnerMetadata": self.runner_metadata.to_wire()}
        try:
            response = await self._make_request("GET", "/test-execution-config", params=params)
            info = TestingSandboxConfigInfo.model_validate(response.json() or {})
        except AuthenticationError:
            raise
        except (ControlPlaneError, ValueError) as e:
            self.logger.warning("Failed to fetch test execution config", error=str(e))
            return None

        self.logger.info(
            "Successfully fetched test execution config",
            testing_sandbox_config_id=info.testing_sandbox_config_id,
            max_concurrency=info.test_execution_config.max_concurrency,
        )
        return info
