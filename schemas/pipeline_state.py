"""Pipeline state schema.

State machine representation of a single run: stage results, step results
and the run-level state. Persisted to disk after every transition so a run
can be audited afterwards.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .approval import ApprovalRequest


class RunState(str, Enum):
    """Run-level states, in execution order."""

    INIT = "init"
    BUILD_TEST = "build_test"
    QUALITY_GATES = "quality_gates"
    ARCHIVE = "archive"
    STAGING_DEPLOY = "staging_deploy"
    AWAITING_APPROVAL = "awaiting_approval"
    PROD_DEPLOY = "prod_deploy"
    COMPLETE = "complete"
    FAILED = "failed"


# States that execute a stage of work
STAGE_ORDER: tuple[RunState, ...] = (
    RunState.BUILD_TEST,
    RunState.QUALITY_GATES,
    RunState.ARCHIVE,
    RunState.STAGING_DEPLOY,
    RunState.AWAITING_APPROVAL,
    RunState.PROD_DEPLOY,
)


class StageStatus(str, Enum):
    """Individual stage status."""

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepStatus(str, Enum):
    """Outcome of one step."""

    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class StepResult(BaseModel):
    """Captured outcome of a single step execution."""

    name: str
    status: StepStatus
    exit_code: int | None = Field(None, description="None when killed on timeout")
    output: str = ""
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return self.status == StepStatus.PASSED


class GroupResult(BaseModel):
    """Aggregated outcome of a parallel group. Always holds every member."""

    results: list[StepResult] = Field(default_factory=list)
    duration: float = 0.0

    @property
    def status(self) -> StageStatus:
        return StageStatus.PASSED if all(r.passed for r in self.results) else StageStatus.FAILED

    @property
    def failures(self) -> list[StepResult]:
        return [r for r in self.results if not r.passed]


class StageResult(BaseModel):
    """Result of a single stage execution."""

    name: str = Field(..., description="Stage name")
    status: StageStatus = Field(StageStatus.PENDING)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: float | None = None

    steps: list[StepResult] = Field(default_factory=list)
    sidecar: str | None = Field(None, description="Name of the sidecar the stage owned")

    # Failure info
    error_type: str | None = None
    error: str | None = None
    output: str | None = Field(None, description="Output of the first failing step")

    # Cleanup problems never change the status
    warnings: list[str] = Field(default_factory=list)


class FailureInfo(BaseModel):
    """Primary diagnostic for a failed run."""

    stage: str
    error_type: str
    message: str
    step: str | None = None
    output: str | None = None


class PipelineRun(BaseModel):
    """Complete state of one pipeline run.

    This is the central object the orchestrator updates as the run
    progresses; it is rewritten to ``state.json`` on every transition.
    """

    run_id: str = Field(..., description="Unique run identifier")
    run_number: int
    project: str

    state: RunState = Field(RunState.INIT)
    stages: list[StageResult] = Field(default_factory=list)

    started_at: datetime = Field(default_factory=datetime.now)
    ended_at: datetime | None = None

    artifact_id: str | None = None
    approval: ApprovalRequest | None = None
    standby_host: str | None = Field(
        None, description="Production host that received this run's release"
    )

    failure: FailureInfo | None = None
    warnings: list[str] = Field(default_factory=list)

    def get_stage(self, name: str) -> StageResult | None:
        for result in self.stages:
            if result.name == name:
                return result
        return None

    def last_stage(self) -> StageResult | None:
        return self.stages[-1] if self.stages else None

    @property
    def is_terminal(self) -> bool:
        return self.state in (RunState.COMPLETE, RunState.FAILED)
