"""Main entry point for the Test Runner Agent."""

import asyncio
import signal
import sys

from pydantic import ValidationError

from config import RunnerConfig, load_config
from models import RunnerMetadata, ScriptData, StopReason
from services import (
    ActionExecutor,
    AuthenticationError,
    CommandProcessor,
    ConcurrencyLimiter,
    ControlPlaneClient,
    resolve_max_concurrency,
)
from services import runner_metrics
from utils import configure_logging, get_logger, set_correlation_id

FAILURE_STOP_REASONS = {StopReason.POLL_ERRORS_EXHAUSTED}


def _install_signal_handlers(processor: CommandProcessor) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, processor.stop)
        except (NotImplementedError, RuntimeError):
            # Not available on every platform (e.g. Windows event loops).
            pass


async def run(config: RunnerConfig) -> int:
    """Run the agent until it stops and return the process exit code."""
    logger = get_logger(__name__)
    set_correlation_id()
    logger.info(
        "Starting Test Runner Agent",
        version=config.app_version,
        run_id=config.run_id,
        control_plane_url=config.control_plane_url,
        commit_sha=config.commit_sha,
        app_dir=config.app_dir,
        test_framework=config.test_framework,
        test_file_regex=config.test_file_regex,
        workspace_root=config.workspace_root,
    )

    runner_metadata = RunnerMetadata()
    if config.runner_index is not None:
        runner_metadata = runner_metadata.model_copy(update={"runner_index": config.runner_index})

    try:
        async with ControlPlaneClient(config, runner_metadata) as client:
            sandbox_config = await client.get_testing_sandbox_config(config.run_id)
            max_concurrency = resolve_max_concurrency(
                config.max_concurrency,
                sandbox_config.test_execution_config if sandbox_config else None,
            )
            executor = ActionExecutor(
                ScriptData(
                    test=config.test_script,
                    lint=config.lint_script,
                    coverage=config.coverage_script,
                ),
                workspace_root=config.workspace_root,
            )
            processor = CommandProcessor(
                config,
                client,
                executor,
                ConcurrencyLimiter(max_concurrency),
                testing_sandbox_config_id=(
                    sandbox_config.testing_sandbox_config_id if sandbox_config else None
                ),
            )
            _install_signal_handlers(processor)

            try:
                reason = await processor.run()
            finally:
                cancelled = await processor.drain()
                if cancelled:
                    logger.warning("Commands cancelled during shutdown", cancelled=cancelled)
            processor.raise_if_fatal()
    except AuthenticationError as e:
        logger.error("Authentication with the control plane failed, exiting", error=str(e))
        return 1
    finally:
        logger.info("Runner metrics", metrics=runner_metrics.summary())

    logger.info("Test Runner Agent stopped", reason=reason.value)
    return 1 if reason in FAILURE_STOP_REASONS else 0


def main() -> None:
    """Console script entry point."""
    try:
        config = load_config()
    except ValidationError as e:
        configure_logging("INFO")
        get_logger(__name__).error("Invalid configuration", error=str(e))
        sys.exit(1)

    configure_logging(config.log_level, json_output=config.log_json)
    sys.exit(asyncio.run(run(config)))


if __name__ == "__main__":
    main()
