"""Tools module for pipeline operations.

Provides deterministic abstractions for:
- Shell steps (single and parallel groups)
- Sidecar resources (start, readiness polling, teardown)
- Artifacts (packaging, storage, retrieval)
- Remote deployment (transfer, activation, symlink switch, rollback)
"""

from .artifact_store import ArtifactStore
from .deploy import DeploymentExecutor
from .parallel import ParallelGroup
from .release_ledger import ReleaseLedger
from .sidecar import ResourceLifecycleManager, SidecarHandle
from .step_executor import StepEnvironment, StepExecutor
from .transport import LocalTransport, RemoteTransport, SshTransport, get_transport

__all__ = [
    "StepEnvironment",
    "StepExecutor",
    "ParallelGroup",
    "ResourceLifecycleManager",
    "SidecarHandle",
    "ArtifactStore",
    "DeploymentExecutor",
    "ReleaseLedger",
    "RemoteTransport",
    "SshTransport",
    "LocalTransport",
    "get_transport",
]
