"""Command processor service for the Test Runner Agent.

This service long-polls the ControlPlane for commands, acknowledges them,
deduplicates redeliveries and hands each command to the concurrency limiter
for execution. Results are reported back as each command finishes.
"""

import asyncio
import time
from typing import Callable, Dict, List, Optional, Set

from config import RunnerConfig
from models import (
    ActionCommand,
    CommandOutcome,
    CommandResult,
    CommandType,
    FileCommandInfo,
    RunnerCommandInfo,
    StopReason,
    UnknownCommandInfo,
)
from utils import (
    ConnectionStateManager,
    bind_command_id,
    create_contextual_logger,
    log_exception,
    set_correlation_id,
)
from . import runner_metrics
from .action_executor import ActionExecutor
from .concurrency_limiter import ConcurrencyLimiter
from .control_plane_client import ControlPlaneClient
from .exceptions import AuthenticationError


def _action_label(command: ActionCommand) -> str:
    info = command.command
    if isinstance(info, (FileCommandInfo, RunnerCommandInfo)):
        return info.action.value
    return info.action or "unknown"


class CommandProcessor:
    """Drives the poll → ack → dispatch cycle and owns the runner's lifetime."""

    def __init__(
        self,
        config: RunnerConfig,
        control_plane_client: ControlPlaneClient,
        executor: ActionExecutor,
        limiter: ConcurrencyLimiter,
        testing_sandbox_config_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.control_plane_client = control_plane_client
        self.executor = executor
        self.limiter = limiter
        self.testing_sandbox_config_id = testing_sandbox_config_id
        self.logger = create_contextual_logger(__name__, service="command_processor")
        self._clock = clock
        self._connection_state = ConnectionStateManager(config.max_consecutive_poll_errors)

        # Owned by the poll loop only
        self._pending_ack: Dict[str, ActionCommand] = {}
        self._dispatched: Set[str] = set()

        self._in_flight: Set["asyncio.Task[None]"] = set()
        self._shutdown_event = asyncio.Event()
        self._terminate_requested = False
        self._fatal_error: Optional[BaseException] = None

    @property
    def pending_ack_ids(self) -> List[str]:
        return list(self._pending_ack)

    @property
    def dispatched_ids(self) -> Set[str]:
        return set(self._dispatched)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def terminate_requested(self) -> bool:
        return self._terminate_requested

    def stop(self) -> None:
        """Ask the poll loop to exit after the current cycle."""
        self.logger.info("Stopping command processor...")
        self._shutdown_event.set()

    async def run(self) -> StopReason:
        """Poll until the duration elapses or a stop condition is met.

        Raises:
            AuthenticationError: when the ControlPlane rejects the auth token,
                whether on a poll or inside a command job.
        """
        start = self._clock()
        end = start + self.config.polling_duration
        last_command_received = start
        self.logger.info(
            "Command processor started",
            polling_duration=self.config.polling_duration,
            polling_interval=self.config.polling_interval,
            max_concurrency=self.limiter.max_concurrency,
        )

        while self._clock() < end:
            self.raise_if_fatal()
            if self._shutdown_event.is_set():
                return StopReason.SHUTDOWN_SIGNAL

            idle = self._clock() - last_command_received
            if idle > self.config.inactivity_timeout:
                self.logger.info(
                    f"No commands received for {self.config.inactivity_timeout:g} seconds. Exiting polling loop."
                )
                return StopReason.INACTIVITY_TIMEOUT

            set_correlation_id()
            self.logger.debug(
                "Polling server for commands",
                remaining_seconds=round(end - self._clock()),
                limiter=self.limiter.counts().model_dump(),
            )
            try:
                received = await self.poll_once()
            except AuthenticationError:
                raise
            except Exception as e:
                runner_metrics.poll_errors.inc()
                self._connection_state.mark_failure()
                self.logger.warning(
                    f"Polling error: {e}",
                    consecutive_errors=self._connection_state.consecutive_failures,
                    max_consecutive_errors=self.config.max_consecutive_poll_errors,
                )
                if self._connection_state.is_exhausted():
                    self.logger.error("Max consecutive polling errors reached, exiting...")
                    return StopReason.POLL_ERRORS_EXHAUSTED
                await self._sleep(self.config.poll_error_delay)
            else:
                self._connection_state.mark_success()
                if received:
                    last_command_received = self._clock()
                if self._terminate_requested:
                    self.logger.info("Terminate command received, exiting...")
                    return StopReason.TERMINATE_COMMAND

            runner_metrics.record_limiter_counts(self.limiter.counts())
            await self._sleep(self.config.polling_interval)

        self.raise_if_fatal()
        return StopReason.DURATION_ELAPSED

    async def poll_once(self) -> int:
        """Run one poll/ack cycle and return how many commands the poll returned.

        Commands still waiting for an ack are retried first, then the new
        ones in the order received. Only acknowledged commands are
        dispatched, and each ID at most once per process.
        """
        commands = await self.control_plane_client.poll_commands(
            self.config.run_id, self.testing_sandbox_config_id
        )
        if commands:
            self.logger.info(f"Received {len(commands)} commands from server")
            for command in commands:
                self.logger.debug("Command", command=command.to_wire())

        batch: Dict[str, ActionCommand] = dict(self._pending_ack)
        for command in commands:
            batch.setdefault(command.id, command)

        for command in batch.values():
            if command.id in self._dispatched:
                self._pending_ack.pop(command.id, None)
                self.logger.info("Skipping already dispatched command", command_id=command.id)
                # Redelivered: the server may have missed the ack; acking again is harmless.
                await self.control_plane_client.ack_command(self.config.run_id, command.id)
                continue

            acked = await self.control_plane_client.ack_command(self.config.run_id, command.id)
            if not acked:
                self._pending_ack[command.id] = command
                self.logger.warning(
                    "Command not acknowledged, will retry next cycle", command_id=command.id
                )
                continue
            self._pending_ack.pop(command.id, None)
            self._dispatched.add(command.id)

            if command.is_terminate:
                self._terminate_requested = True
                break
            self._dispatch(command)

        return len(commands)

    def _dispatch(self, command: ActionCommand) -> None:
        runner_metrics.commands_received.inc()
        task = asyncio.create_task(self._run_command(command), name=f"command-{command.id}")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run_command(self, command: ActionCommand) -> None:
        bind_command_id(command.id)
        action = _action_label(command)

        try:
            if isinstance(command.command, UnknownCommandInfo):
                runner_metrics.command_errors.labels(stage="pre_scheduling").inc()
                self.logger.error("Unknown command type", reason=command.command.reason)
                outcome = CommandOutcome.failure(CommandType.RUNNER, command.command.reason)
                await self._report(command, outcome, action)
                return
            await self.limiter.schedule(lambda: self._process_command(command, action))
        except AuthenticationError as e:
            self._fail(e)
        except asyncio.CancelledError:
            self.logger.warning("Command cancelled before completion")
            raise
        except Exception as e:
            runner_metrics.command_errors.labels(stage="execution").inc()
            log_exception(self.logger, e, "Error executing command", action=action)
            command_type = (
                CommandType.FILE if isinstance(command.command, FileCommandInfo) else CommandType.RUNNER
            )
            try:
                await self._report(command, CommandOutcome.failure(command_type, str(e)), action)
            except AuthenticationError as auth_error:
                self._fail(auth_error)

    async def _process_command(self, command: ActionCommand, action: str) -> None:
        self.logger.info("Processing command", action=action)
        outcome = await self.executor.execute(command.command)
        await self._report(command, outcome, action)

    async def _report(self, command: ActionCommand, outcome: CommandOutcome, action: str) -> None:
        result = CommandResult(id=command.id, result=outcome)
        runner_metrics.commands_completed.labels(
            action=action, outcome="success" if outcome.succeeded else "failure"
        ).inc()
        self.logger.info(
            "Command finished",
            action=action,
            exit_code=outcome.exit_code,
            error=outcome.error,
        )
        await self.control_plane_client.send_command_result(self.config.run_id, result)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for in-flight commands, cancelling whatever is left after ``timeout``.

        Returns the number of commands that had to be cancelled.
        """
        if not self._in_flight:
            return 0
        timeout = self.config.shutdown_grace_period if timeout is None else timeout
        self.logger.info(
            "Waiting for in-flight commands", in_flight=len(self._in_flight), timeout=timeout
        )
        tasks = set(self._in_flight)
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self.logger.warning("Cancelled unfinished commands", cancelled=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
        return len(pending)

    def _fail(self, error: BaseException) -> None:
        """Record a fatal error from a command job and stop the loop."""
        if self._fatal_error is None:
            self._fatal_error = error
        self._shutdown_event.set()

    def raise_if_fatal(self) -> None:
        """Re-raise the first fatal error a command job recorded, if any."""
        if self._fatal_error is not None:
            raise self._fatal_error

    async def _sleep(self, seconds: float) -> None:
        """Interruptible sleep: returns early when the loop is asked to stop."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
