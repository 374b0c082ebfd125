"""Deployment result and ledger schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from .definitions import TargetRole


class DeployResult(BaseModel):
    """Outcome of deploying an artifact to one target."""

    success: bool
    target: str
    role: TargetRole
    host: str
    artifact_id: str
    release_dir: str
    current_path: str
    phase: str = Field("transfer", description="Last remote phase reached")
    symlink_updated: bool = False
    duration_seconds: float = 0.0
    logs: str = ""


class DeploymentRecord(BaseModel):
    """Ledger entry for one deploy attempt."""

    run_id: str
    artifact_id: str
    target: str
    role: TargetRole
    host: str
    release_dir: str
    success: bool
    timestamp: datetime = Field(default_factory=datetime.now)
    action: str = Field("deploy", description="'deploy' or 'rollback'")


class StandbyRecord(BaseModel):
    """Source of truth for traffic-switch tooling.

    Names the production host that now holds a fully deployed release and
    is ready to receive live traffic.
    """

    target: str
    host: str
    release_dir: str
    artifact_id: str
    run_id: str
    approved_by: str | None = None
    deployed_at: datetime = Field(default_factory=datetime.now)
