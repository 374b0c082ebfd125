"""Build artifact schema."""

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class Artifact(BaseModel):
    """Immutable packaged build output of one run."""

    model_config = ConfigDict(frozen=True)

    artifact_id: str = Field(..., description="'<project>-<run-number>'")
    run_id: str
    run_number: int
    path: Path = Field(..., description="Content handle: the persisted zip file")
    sha256: str
    size_bytes: int
    file_count: int
    created_at: datetime
    exclusions: tuple[str, ...] = Field(default_factory=tuple)

    @property
    def filename(self) -> str:
        return f"{self.artifact_id}.zip"
