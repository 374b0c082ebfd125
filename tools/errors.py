"""Error taxonomy for pipeline execution.

Every failure that can end a stage derives from ``PipelineError``. The
stage runner records ``error_type`` (the class name), the message and any
captured output as the run's primary diagnostic.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from schemas.deployment import DeployResult
    from schemas.pipeline_state import StepResult


class PipelineError(Exception):
    """Base class for failures that halt a stage."""

    def __init__(self, message: str, output: str | None = None):
        self.message = message
        self.output = output
        super().__init__(message)


class StepFailed(PipelineError):
    """A step exited non-zero or exceeded its timeout."""

    def __init__(self, result: StepResult):
        self.result = result
        if result.exit_code is None:
            message = f"Step '{result.name}' timed out after {result.duration:.1f}s"
        else:
            message = f"Step '{result.name}' failed with exit code {result.exit_code}"
        super().__init__(message, output=result.output)

    @property
    def step(self) -> str:
        return self.result.name


class ResourceUnavailable(PipelineError):
    """A sidecar never became ready."""


class ArtifactNotFound(PipelineError):
    """No artifact is stored under the requested identifier."""


class ArtifactExists(PipelineError):
    """An artifact identifier is already taken; artifacts are never regenerated."""


class TransferFailed(PipelineError):
    """Copying the artifact to the target host failed."""


class ActivationFailed(PipelineError):
    """The remote unpack or activation sequence failed before the symlink swap."""

    def __init__(self, message: str, result: DeployResult | None = None):
        self.result = result
        super().__init__(message, output=result.logs if result else None)

    @property
    def phase(self) -> str | None:
        return self.result.phase if self.result else None


class InvalidTarget(PipelineError):
    """The target may not receive this deployment."""


class Unauthorized(PipelineError):
    """The actor is not in the approver allow-list."""


class AlreadyResolved(PipelineError):
    """The approval request already has a resolution."""


class ApprovalRejected(PipelineError):
    """Production promotion was explicitly rejected."""


class ApprovalTimedOut(PipelineError):
    """Nobody resolved the approval request before its deadline."""


class InvalidTransition(PipelineError):
    """The run state machine refused a transition."""


class RunExists(PipelineError):
    """A run for this triggering event already exists."""


class ConfigError(PipelineError):
    """Configuration could not be loaded or is inconsistent."""


class ArtifactCorrupted(PipelineError):
    """The stored artifact no longer matches its recorded checksum."""
