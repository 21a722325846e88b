"""Unit tests for logging utilities."""

import asyncio
import json

import pytest

from utils.logging import (
    _add_run_context,
    _render_log4j_line,
    bind_command_id,
    clear_correlation_id,
    get_command_id,
    get_correlation_id,
    set_correlation_id,
)


class TestLoggingContext:
    """Test cases for correlation and command ID context."""

    def test_correlation_id(self) -> None:
        generated = set_correlation_id()
        assert get_correlation_id() == generated

        set_correlation_id("cycle-1")
        assert get_correlation_id() == "cycle-1"

        clear_correlation_id()
        assert get_correlation_id() is None

    @pytest.mark.asyncio
    async def test_command_id_is_task_local(self) -> None:
        """Test that a command ID bound inside a task does not leak out of it."""
        bind_command_id(None)

        async def job(command_id: str) -> str:
            bind_command_id(command_id)
            await asyncio.sleep(0)
            return get_command_id()

        results = await asyncio.gather(
            asyncio.create_task(job("cmd-1")), asyncio.create_task(job("cmd-2"))
        )

        assert results == ["cmd-1", "cmd-2"]
        assert get_command_id() is None

    def test_system_context(self) -> None:
        set_correlation_id("cycle-2")
        bind_command_id("cmd-9")
        try:
            event_dict = _add_run_context(None, "info", {"event": "hello"})
        finally:
            bind_command_id(None)
            clear_correlation_id()

        assert event_dict["correlation_id"] == "cycle-2"
        assert event_dict["command_id"] == "cmd-9"
        assert "pid" in event_dict

    def test_render_log4j_line(self) -> None:
        line = _render_log4j_line(
            None,
            "info",
            {"timestamp": "2024-01-15T10:00:00Z", "level": "info", "event": "Polling", "logger": "x", "run": 1},
        )

        prefix, _, context = line.partition(": Polling ")
        assert prefix == "2024-01-15T10:00:00Z [info]"
        assert json.loads(context) == {"run": 1}
