"""Command management models for the Test Runner Agent."""

import time
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .enums import CommandType, FileAction, RunnerAction


def epoch_millis() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class WireModel(BaseModel):
    """Base for models exchanged with the ControlPlane (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FileCommandData(WireModel):
    """Parameters of a file command."""

    file_path: str = Field(..., description="Path of the target file, relative to the base dir")
    file_contents: Optional[str] = None
    original_file_path: Optional[str] = Field(
        default=None, description="Source file for layouts that keep tests apart from sources"
    )
    app_dir: Optional[str] = Field(default=None, description="Service directory inside the repo")
    test_file_paths: Optional[List[str]] = Field(
        default=None, description="Test files for a coverage run"
    )


class RunnerCommandData(WireModel):
    """Parameters of a runner command."""

    script: Optional[str] = None


class FileCommandInfo(WireModel):
    type: Literal["file"] = "file"
    action: FileAction
    data: FileCommandData


class RunnerCommandInfo(WireModel):
    type: Literal["runner"] = "runner"
    action: RunnerAction
    data: Optional[RunnerCommandData] = None


class UnknownCommandInfo(WireModel):
    """A payload that matches no known command variant."""

    type: Optional[str] = None
    action: Optional[str] = None
    reason: str = "Unknown command type"
    raw: Any = None

    @classmethod
    def from_payload(cls, payload: Any, reason: str) -> "UnknownCommandInfo":
        type_ = action = None
        if isinstance(payload, dict):
            type_ = payload.get("type")
            action = payload.get("action")
        return cls(
            type=type_ if isinstance(type_, str) else None,
            action=action if isinstance(action, str) else None,
            reason=reason,
            raw=payload,
        )


KnownCommandInfo = Annotated[
    Union[FileCommandInfo, RunnerCommandInfo], Field(discriminator="type")
]
CommandInfo = Union[FileCommandInfo, RunnerCommandInfo, UnknownCommandInfo]

_known_command_adapter: TypeAdapter = TypeAdapter(KnownCommandInfo)


class ActionCommand(WireModel):
    """Command received from the ControlPlane."""

    id: str = Field(..., description="Unique command identifier")
    created_at: Optional[datetime] = Field(default=None, description="Command timestamp")
    command: CommandInfo

    @field_validator("command", mode="before")
    @classmethod
    def classify_command(cls, value: Any) -> Any:
        """Resolve the payload variant; anything unrecognised becomes UnknownCommandInfo."""
        if isinstance(value, BaseModel):
            return value
        try:
            return _known_command_adapter.validate_python(value)
        except ValidationError as e:
            return UnknownCommandInfo.from_payload(
                value, reason=f"Unknown command type: {e}"
            )

    @property
    def is_terminate(self) -> bool:
        return (
            isinstance(self.command, RunnerCommandInfo)
            and self.command.action == RunnerAction.TERMINATE
        )


class CommandOutcome(WireModel):
    """Outcome of executing a single command."""

    type: CommandType
    completed_at: int = Field(default_factory=epoch_millis, description="Epoch milliseconds")
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    file_contents: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return not self.exit_code

    @classmethod
    def failure(cls, command_type: CommandType, message: str, exit_code: int = 1) -> "CommandOutcome":
        return cls(
            type=command_type,
            stdout="",
            stderr=message,
            exit_code=exit_code,
            error=message,
        )


class CommandResult(WireModel):
    """Result of command execution, as reported to the ControlPlane."""

    id: str = Field(..., description="Command identifier")
    result: CommandOutcome


class ScriptData(BaseModel):
    """Script templates configured for the run."""

    test: str
    lint: Optional[str] = None
    coverage: Optional[str] = None

    @field_validator("lint", "coverage", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v
