"""Run-level models: execution config, runner metadata and limiter counts."""

from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .commands import WireModel


class TestExecutionConfig(WireModel):
    """Server-side execution overrides for the run."""

    __test__ = False

    max_concurrency: Optional[Any] = Field(
        default=None, description="Server-suggested concurrency, validated on use"
    )


class TestingSandboxConfigInfo(WireModel):
    """Response of the test execution config endpoint."""

    __test__ = False

    testing_sandbox_config_id: Optional[str] = None
    test_execution_config: TestExecutionConfig = Field(default_factory=TestExecutionConfig)


class RunnerMetadata(BaseSettings):
    """CI environment forwarded verbatim on every ControlPlane call."""

    github_repo: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GITHUB_REPOSITORY", "githubRepo"),
        serialization_alias="githubRepo",
    )
    github_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GITHUB_REF", "githubRef"),
        serialization_alias="githubRef",
    )
    # Workflow run id; unchanged when the workflow is re-run.
    github_run_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GITHUB_RUN_ID", "githubRunId"),
        serialization_alias="githubRunId",
    )
    github_sha: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GITHUB_SHA", "githubSha"),
        serialization_alias="githubSha",
    )
    github_triggering_actor: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GITHUB_TRIGGERING_ACTOR", "githubTriggeringActor"),
        serialization_alias="githubTriggeringActor",
    )
    github_run_attempt: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GITHUB_RUN_ATTEMPT", "githubRunAttempt"),
        serialization_alias="githubRunAttempt",
    )
    github_workflow_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GITHUB_WORKFLOW_REF", "githubWorkflowRef"),
        serialization_alias="githubWorkflowRef",
    )
    runner_index: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("RUNNER_INDEX", "INPUT_RUNNERINDEX", "runnerIndex"),
        serialization_alias="runnerIndex",
    )

    model_config = SettingsConfigDict(
        case_sensitive=False, extra="ignore", env_file=None, populate_by_name=True
    )

    def to_wire(self) -> Dict[str, str]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class LimiterCounts(BaseModel):
    """Snapshot of the concurrency limiter."""

    queued: int = 0
    running: int = 0
    done: int = 0
