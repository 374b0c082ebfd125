"""Orchestrator module for shipline.

State machine-based pipeline orchestration with:
- Strictly ordered stages and explicit transitions
- Guaranteed stage cleanup and sidecar teardown
- Human approval gate before production
- State persistence for audit
"""

from .approval_gate import ApprovalGate
from .checkpoints import ApprovalChannel, ConsoleApprovalChannel, FileApprovalChannel
from .runner import PipelineOrchestrator
from .stage_runner import StageContext, StageRunner
from .state_machine import StateMachine, Transition

__all__ = [
    "StateMachine",
    "Transition",
    "StageRunner",
    "StageContext",
    "ApprovalGate",
    "ApprovalChannel",
    "FileApprovalChannel",
    "ConsoleApprovalChannel",
    "PipelineOrchestrator",
]
