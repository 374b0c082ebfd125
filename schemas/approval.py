"""Approval request schema."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ApprovalStatus(str, Enum):
    """Resolution of an approval request. Terminal once not pending."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


class Decision(str, Enum):
    """A human decision submitted to the gate."""

    APPROVE = "approve"
    REJECT = "reject"


class ApprovalRequest(BaseModel):
    """Human approval checkpoint for production promotion."""

    request_id: str
    run_id: str
    prompt: str
    approvers: list[str] = Field(
        default_factory=list,
        description="Allowed approvers; empty means anyone may decide",
    )
    requested_at: datetime = Field(default_factory=datetime.now)
    deadline: datetime

    status: ApprovalStatus = Field(ApprovalStatus.PENDING)
    resolved_by: str | None = Field(None, description="Actor recorded with the decision")
    resolved_at: datetime | None = None
    notes: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.status != ApprovalStatus.PENDING

    def allows(self, actor: str) -> bool:
        """Empty approver set is unrestricted; otherwise a strict allow-list."""
        return not self.approvers or actor in self.approvers
