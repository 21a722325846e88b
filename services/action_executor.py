"""Action executor service for the Test Runner Agent.

Maps each command action onto a filesystem operation or a child process
running a rendered script, and normalizes whatever happens into a
CommandOutcome. Per-command failures are returned as data, never raised.
"""

import asyncio
import os
import signal
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from models import (
    CommandInfo,
    CommandOutcome,
    CommandType,
    FileAction,
    FileCommandData,
    FileCommandInfo,
    RunnerAction,
    RunnerCommandInfo,
    ScriptData,
    ScriptKind,
    UnknownCommandInfo,
)
from utils import create_contextual_logger
from .exceptions import ActionError, ScriptSpawnError
from .script_templater import FILE, ORIGINAL_FILE, TEST_FILE_PATHS, ScriptTemplater

LINT_SCRIPT_MISSING_MESSAGE = "Lint script missing or invalid, skipping lint action."

MAX_OUTPUT_BYTES = 10 * 1024 * 1024
READ_CHUNK_SIZE = 64 * 1024

SCRIPT_TIMEOUTS: Dict[ScriptKind, float] = {
    ScriptKind.LINT: 2 * 60,
    ScriptKind.TEST: 5 * 60,
    ScriptKind.COVERAGE: 10 * 60,
    ScriptKind.SCRIPT: 5 * 60,
}


@dataclass(frozen=True)
class ResolvedPaths:
    """Absolute paths of a file command."""

    base_dir: str
    file_path: str
    original_file_path: Optional[str] = None


class _OutputBuffer:
    """Collects stdout and stderr under one combined byte budget.

    Crossing the budget truncates the output and calls ``on_overflow`` once,
    which kills the process so both streams reach EOF.
    """

    def __init__(self, limit: int, on_overflow: Callable[[], None]) -> None:
        self.limit = limit
        self.on_overflow = on_overflow
        self.total = 0
        self.overflowed = False
        self.stdout: List[bytes] = []
        self.stderr: List[bytes] = []

    async def drain(self, stream: Optional[asyncio.StreamReader], sink: List[bytes]) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                return
            if self.overflowed:
                continue
            self.total += len(chunk)
            if self.total > self.limit:
                sink.append(chunk[: len(chunk) - (self.total - self.limit)])
                self.overflowed = True
                self.on_overflow()
                continue
            sink.append(chunk)

    @staticmethod
    def decode(chunks: List[bytes]) -> str:
        return b"".join(chunks).decode("utf-8", errors="replace")


def normalize_file_path(file_path: str, app_dir: Optional[str]) -> str:
    """Drop a redundant leading ``<appDir>/`` from a path."""
    if app_dir and file_path.startswith(app_dir + "/"):
        return file_path[len(app_dir) + 1:]
    return file_path


def _signal_exit_code(returncode: Optional[int]) -> int:
    """Shell-style exit code for a process that was killed by a signal."""
    if returncode is None:
        return 128 + signal.SIGKILL
    if returncode < 0:
        return 128 - returncode
    return returncode


class ActionExecutor:
    """Executes file and runner commands inside the workspace."""

    def __init__(
        self,
        scripts: ScriptData,
        workspace_root: str,
        script_cwd: Optional[str] = None,
        timeouts: Optional[Mapping[ScriptKind, float]] = None,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
    ) -> None:
        self.scripts = scripts
        self.workspace_root = workspace_root
        self.script_cwd = script_cwd
        self.timeouts = {**SCRIPT_TIMEOUTS, **(timeouts or {})}
        self.max_output_bytes = max_output_bytes
        self.templater = ScriptTemplater()
        self.logger = create_contextual_logger(__name__, service="action_executor")

    async def execute(self, command: CommandInfo) -> CommandOutcome:
        """Run a command and return its outcome."""
        if isinstance(command, FileCommandInfo):
            return await self.execute_file_command(command.action, command.data)
        if isinstance(command, RunnerCommandInfo):
            return await self.execute_runner_command(command)
        if isinstance(command, UnknownCommandInfo):
            return CommandOutcome.failure(CommandType.RUNNER, command.reason)
        raise TypeError(f"Unsupported command payload: {type(command).__name__}")

    async def execute_file_command(self, action: FileAction, data: FileCommandData) -> CommandOutcome:
        """Run a file action. ActionError and OSError become a failed outcome."""
        try:
            if action == FileAction.WRITE:
                outcome = await self.write(data)
            elif action == FileAction.READ:
                outcome = await self.read(data)
            elif action == FileAction.LINT:
                outcome = await self.lint(data)
            elif action == FileAction.LINT_READ:
                outcome = await self.lint_read(data)
            elif action == FileAction.WRITE_LINT_READ:
                outcome = await self.write_lint_read(data)
            elif action == FileAction.TEST:
                outcome = await self.test(data)
            elif action == FileAction.COVERAGE:
                outcome = await self.coverage(data)
            elif action == FileAction.DELETE:
                outcome = await self.delete(data)
            else:
                raise ActionError(f"Unsupported file action: {action}")
        except (ActionError, OSError, UnicodeDecodeError) as e:
            self.logger.warning("Error processing command", action=str(action), error=str(e))
            return CommandOutcome.failure(CommandType.FILE, str(e))

        # error is only reported alongside a non-zero exit code
        return outcome.model_copy(update={"error": outcome.error if outcome.exit_code else None})

    async def execute_runner_command(self, command: RunnerCommandInfo) -> CommandOutcome:
        if command.action == RunnerAction.TERMINATE:
            return CommandOutcome(type=CommandType.RUNNER)
        try:
            script = command.data.script if command.data else None
            if not script:
                raise ActionError(
                    "Script is missing or invalid. Ensure that a valid script is provided in your workflow."
                )
            self.logger.info("Script command received, executing...")
            return await self.run_script(
                script,
                cwd=self.script_cwd or os.getcwd(),
                kind=ScriptKind.SCRIPT,
                command_type=CommandType.RUNNER,
            )
        except ActionError as e:
            self.logger.warning("Error processing runner command", error=str(e))
            return CommandOutcome.failure(CommandType.RUNNER, str(e))

    def resolve_paths(self, data: FileCommandData) -> ResolvedPaths:
        """Resolve a command's paths against ``<workspace>/<appDir>``."""
        base_dir = (
            os.path.join(self.workspace_root, data.app_dir) if data.app_dir else self.workspace_root
        )
        file_path = os.path.join(base_dir, normalize_file_path(data.file_path, data.app_dir))
        original_file_path = None
        if data.original_file_path:
            original_file_path = os.path.join(
                base_dir, normalize_file_path(data.original_file_path, data.app_dir)
            )

        self.logger.debug(
            "Resolved paths",
            workspace_root=self.workspace_root,
            app_dir=data.app_dir,
            base_dir=base_dir,
            file_path=file_path,
            original_file_path=original_file_path,
        )
        return ResolvedPaths(base_dir, file_path, original_file_path)

    async def _in_thread(self, func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.get_running_loop().run_in_executor(None, func, *args)

    async def write(self, data: FileCommandData) -> CommandOutcome:
        paths = self.resolve_paths(data)
        if data.file_contents is None:
            raise ActionError(
                f"Failed to write to file ({paths.file_path}). "
                "File contents are required for write action."
            )

        await self._in_thread(_write_text, paths.file_path, data.file_contents)
        self.logger.info("File written", file_path=paths.file_path)
        return CommandOutcome(type=CommandType.FILE, stdout="", stderr="", exit_code=0)

    async def read(self, data: FileCommandData) -> CommandOutcome:
        paths = self.resolve_paths(data)
        file_contents = await self._in_thread(_read_text, paths.file_path)
        self.logger.info("File read", file_path=paths.file_path, size=len(file_contents))
        return CommandOutcome(
            type=CommandType.FILE,
            stdout="",
            stderr="",
            exit_code=0,
            file_contents=file_contents,
        )

    async def delete(self, data: FileCommandData) -> CommandOutcome:
        paths = self.resolve_paths(data)
        try:
            await self._in_thread(os.unlink, paths.file_path)
        except FileNotFoundError:
            self.logger.info("File does not exist (already deleted)", file_path=paths.file_path)
            return CommandOutcome(
                type=CommandType.FILE,
                stdout=f"File does not exist (already deleted): {paths.file_path}",
                stderr="",
                exit_code=0,
            )
        except OSError as e:
            raise ActionError(f"Failed to delete file ({paths.file_path}): {e}") from e

        self.logger.info("File deleted", file_path=paths.file_path)
        return CommandOutcome(
            type=CommandType.FILE,
            stdout=f"File deleted: {paths.file_path}",
            stderr="",
            exit_code=0,
        )

    async def lint(self, data: FileCommandData) -> CommandOutcome:
        """Run the lint script; a missing lint script is a skipped, successful lint."""
        if not self.scripts.lint:
            self.logger.warning("Lint script is missing. Skipping lint action.")
            return CommandOutcome(
                type=CommandType.FILE,
                stdout="",
                stderr=LINT_SCRIPT_MISSING_MESSAGE,
                exit_code=0,
            )

        paths = self.resolve_paths(data)
        script = self.templater.render(
            self.scripts.lint, {FILE: os.path.relpath(paths.file_path, paths.base_dir)}
        )
        return await self.run_script(script, cwd=paths.base_dir, kind=ScriptKind.LINT)

    async def lint_read(self, data: FileCommandData) -> CommandOutcome:
        lint_outcome = await self.lint(data)
        if lint_outcome.exit_code != 0 or lint_outcome.stderr == LINT_SCRIPT_MISSING_MESSAGE:
            return lint_outcome.model_copy(update={"file_contents": ""})

        read_outcome = await self.read(data)
        # Report the lint step's exit code and output alongside the file contents.
        return lint_outcome.model_copy(update={"file_contents": read_outcome.file_contents})

    async def write_lint_read(self, data: FileCommandData) -> CommandOutcome:
        write_outcome = await self.write(data)
        if write_outcome.exit_code != 0:
            return write_outcome.model_copy(update={"file_contents": ""})
        return await self.lint_read(data)

    async def test(self, data: FileCommandData) -> CommandOutcome:
        if not self.scripts.test:
            raise ActionError(
                "Test script is missing or invalid. Ensure that a valid test script is provided in your workflow."
            )

        paths = self.resolve_paths(data)
        test_file = normalize_file_path(os.path.relpath(paths.file_path, paths.base_dir), data.app_dir)
        original_file = None
        if paths.original_file_path:
            original_file = normalize_file_path(
                os.path.relpath(paths.original_file_path, paths.base_dir), data.app_dir
            )

        script = self.templater.render(
            self.scripts.test, {FILE: test_file, ORIGINAL_FILE: original_file}
        )
        self.logger.info(
            "Running test script",
            script=script,
            cwd=paths.base_dir,
            test_file=test_file,
            original_file=original_file,
        )
        return await self.run_script(script, cwd=paths.base_dir, kind=ScriptKind.TEST)

    async def coverage(self, data: FileCommandData) -> CommandOutcome:
        if not self.scripts.coverage:
            raise ActionError(
                "Coverage script is missing or invalid. Ensure that a valid coverage script is provided in your workflow."
            )
        if data.test_file_paths is None:
            raise ActionError("Test file paths are required for coverage action")

        paths = self.resolve_paths(data)
        relative_paths = [
            os.path.relpath(path, paths.base_dir) if os.path.isabs(path) else path
            for path in data.test_file_paths
        ]
        script = self.templater.render(
            self.scripts.coverage, {TEST_FILE_PATHS: self.templater.join_paths(relative_paths)}
        )
        return await self.run_script(script, cwd=paths.base_dir, kind=ScriptKind.COVERAGE)

    async def run_script(
        self,
        script: str,
        cwd: str,
        kind: ScriptKind,
        command_type: CommandType = CommandType.FILE,
    ) -> CommandOutcome:
        """Run ``script`` through the shell in ``cwd``.

        The process is killed when it outlives the timeout for ``kind`` or
        prints more than ``max_output_bytes``; both cases, like a non-zero
        exit, are reported in the outcome rather than raised.

        Raises:
            ScriptSpawnError: if the shell cannot be started at all.
        """
        timeout = self.timeouts[kind]
        self.logger.info(f"Executing {kind.value} script", script=script, cwd=cwd, timeout=timeout)

        try:
            process = await asyncio.create_subprocess_shell(
                script,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise ScriptSpawnError(f"Failed to start {kind.value} script in {cwd}: {e}") from e

        output = _OutputBuffer(self.max_output_bytes, on_overflow=lambda: _kill_process_group(process))

        async def communicate() -> int:
            await asyncio.gather(
                output.drain(process.stdout, output.stdout),
                output.drain(process.stderr, output.stderr),
            )
            return await process.wait()

        timed_out = False
        try:
            returncode = await asyncio.wait_for(communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            _kill_process_group(process)
            returncode = await process.wait()
        except asyncio.CancelledError:
            _kill_process_group(process)
            await process.wait()
            raise

        stdout = output.decode(output.stdout)
        stderr = output.decode(output.stderr)
        error = None
        if timed_out:
            exit_code = _signal_exit_code(returncode)
            error = (
                f"Command timed out after {timeout:g}s and was killed "
                f"(exit code {exit_code}): {script}"
            )
            self.logger.warning(f"{kind.value} command timed out", timeout=timeout, exit_code=exit_code)
        elif output.overflowed:
            exit_code = _signal_exit_code(returncode) or 1
            error = (
                f"Command output exceeded the {self.max_output_bytes} byte limit and was killed: {script}"
            )
            self.logger.warning(f"{kind.value} command output limit exceeded", limit=self.max_output_bytes)
        else:
            exit_code = _signal_exit_code(returncode)
            if exit_code != 0:
                error = f"Command failed with exit code {exit_code}: {script}"
                if stderr:
                    error = f"{error}\n{stderr}"

        self.logger.info(
            f"{kind.value} command exited",
            exit_code=exit_code,
            stdout_bytes=len(stdout),
            stderr_bytes=len(stderr),
        )
        return CommandOutcome(
            type=command_type,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            error=error,
        )


def _write_text(path: str, contents: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(contents)


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read()


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    """SIGKILL the script's session, including anything the shell spawned."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
