"""Pipeline definition schema.

Immutable descriptions of what a run executes: steps, sidecars, stages,
remote targets and the per-run configuration object handed to every
component.
"""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CleanupPolicy(str, Enum):
    """When a stage's cleanup steps run."""

    ALWAYS = "always"
    ON_SUCCESS = "on-success"
    ON_FAILURE = "on-failure"


class TargetRole(str, Enum):
    """Role of a remote deployment target."""

    STAGING = "staging"
    PRODUCTION_ACTIVE = "production-active"
    PRODUCTION_STANDBY = "production-standby"


class Step(BaseModel):
    """A named shell invocation with a time budget."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Step identifier")
    command: str = Field(..., description="Shell-level invocation string")
    timeout: float = Field(300.0, gt=0, description="Timeout in seconds")
    working_dir: str | None = Field(
        None, description="Directory relative to the workspace (default: workspace root)"
    )
    env: dict[str, str] = Field(default_factory=dict, description="Extra environment")


class SidecarSpec(BaseModel):
    """Ephemeral resource started for the duration of one stage."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(..., description="Resource kind, e.g. 'mysql'")
    start_command: str = Field(..., description="Command that starts the resource")
    readiness_probe: str = Field(..., description="Command that exits 0 once ready")
    stop_command: str = Field(..., description="Idempotent teardown command")
    poll_interval: float = Field(2.0, gt=0, description="Seconds between probes")
    max_attempts: int = Field(30, ge=1, description="Probe attempts before giving up")
    command_timeout: float = Field(120.0, gt=0, description="Timeout for each command")


class StageDefinition(BaseModel):
    """A named phase of the pipeline."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Stage identifier")
    steps: tuple[Step, ...] = Field(default_factory=tuple)
    parallel: bool = Field(False, description="Run steps concurrently as a group")
    sidecar: SidecarSpec | None = Field(None, description="Optional sidecar requirement")
    cleanup_steps: tuple[Step, ...] = Field(default_factory=tuple)
    cleanup_policy: CleanupPolicy = Field(CleanupPolicy.ALWAYS)


class RemoteTarget(BaseModel):
    """A host that receives releases."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Target name from configuration")
    role: TargetRole
    host: str
    user: str = ""
    release_path: str = Field(
        ..., description="Release directory template, must contain '{run}'"
    )
    current_path: str = Field(..., description="Symlink that points at the live release")
    transfer_dir: str = Field("/tmp", description="Transient location for the artifact")
    unpack_command: str = Field(
        'unzip -q "$ARTIFACT_PATH" -d "$RELEASE_DIR"',
        description="Command that unpacks $ARTIFACT_PATH into $RELEASE_DIR",
    )
    activation: tuple[str, ...] = Field(
        default_factory=tuple,
        description="Commands run inside the new release (migrate, cache prime)",
    )
    transport: str = Field("ssh", description="'ssh' or 'local'")
    ssh_key_path: str = ""
    timeout: float = Field(900.0, gt=0)

    @field_validator("release_path")
    @classmethod
    def _release_path_is_per_run(cls, value: str) -> str:
        if "{run}" not in value:
            raise ValueError("release_path must contain '{run}' so each run gets a fresh directory")
        return value

    @field_validator("transport")
    @classmethod
    def _known_transport(cls, value: str) -> str:
        if value not in ("ssh", "local"):
            raise ValueError(f"Unknown transport: {value}")
        return value

    def release_dir(self, run_number: int) -> str:
        """Release directory for a run."""
        return self.release_path.format(run=run_number)

    @property
    def address(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host


class RunConfig(BaseModel):
    """Immutable configuration of a single pipeline run.

    Built once per triggering event and passed explicitly to every
    component, so no stage reads shared mutable environment.
    """

    model_config = ConfigDict(frozen=True)

    project: str
    run_number: int = Field(..., ge=0)
    workspace: Path
    runs_dir: Path
    artifact_dir: Path
    exclusions: tuple[str, ...] = Field(default_factory=tuple)
    build_test: StageDefinition
    quality_gates: StageDefinition
    targets: tuple[RemoteTarget, ...] = Field(default_factory=tuple)
    approval_prompt: str = "Promote release to production?"
    approvers: frozenset[str] = Field(default_factory=frozenset)
    approval_timeout_seconds: float = Field(86400.0, gt=0)
    approval_poll_interval: float = Field(5.0, gt=0)
    environment: dict[str, str] = Field(
        default_factory=dict, description="Variables exported to every step"
    )

    @property
    def run_id(self) -> str:
        return f"{self.project}-{self.run_number}"

    @property
    def run_dir(self) -> Path:
        return self.runs_dir / self.run_id

    def target_for(self, role: TargetRole) -> RemoteTarget:
        """Return the single target holding a role."""
        matches = [t for t in self.targets if t.role == role]
        if len(matches) != 1:
            raise LookupError(f"Expected exactly one {role.value} target, found {len(matches)}")
        return matches[0]
