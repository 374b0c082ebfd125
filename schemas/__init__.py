"""Schemas module for pipeline data.

Provides Pydantic models for:
- Pipeline definitions (steps, sidecars, stages, remote targets)
- Per-run immutable configuration
- Run state, stage results and step results
- Build artifacts
- Approval requests
- Deployment results and the release ledger
"""

from .approval import ApprovalRequest, ApprovalStatus, Decision
from .artifact import Artifact
from .definitions import (
    CleanupPolicy,
    RemoteTarget,
    RunConfig,
    SidecarSpec,
    StageDefinition,
    Step,
    TargetRole,
)
from .deployment import DeploymentRecord, DeployResult, StandbyRecord
from .pipeline_state import (
    STAGE_ORDER,
    FailureInfo,
    GroupResult,
    PipelineRun,
    RunState,
    StageResult,
    StageStatus,
    StepResult,
    StepStatus,
)

__all__ = [
    # Approval
    "ApprovalRequest",
    "ApprovalStatus",
    "Decision",
    # Artifact
    "Artifact",
    # Definitions
    "CleanupPolicy",
    "RemoteTarget",
    "RunConfig",
    "SidecarSpec",
    "StageDefinition",
    "Step",
    "TargetRole",
    # Deployment
    "DeployResult",
    "DeploymentRecord",
    "StandbyRecord",
    # Pipeline state
    "STAGE_ORDER",
    "FailureInfo",
    "GroupResult",
    "PipelineRun",
    "RunState",
    "StageResult",
    "StageStatus",
    "StepResult",
    "StepStatus",
]
