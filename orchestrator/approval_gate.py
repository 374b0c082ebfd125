"""Human approval gate for production promotion.

State machine: ``pending -> {approved, rejected, timed_out}``, terminal once
resolved. The waiting pipeline thread blocks on a condition variable until
a decision arrives or the deadline passes; a missed deadline counts the
same as a rejection.
"""

import logging
import threading
import uuid
from datetime import datetime
from typing import Callable

from schemas.approval import ApprovalRequest, ApprovalStatus, Decision
from tools.errors import AlreadyResolved, ApprovalTimedOut, Unauthorized

logger = logging.getLogger(__name__)


class ApprovalGate:
    """Suspends a run until an authorized decision or timeout.

    Thread-safe: ``resolve`` is normally called from an approval channel
    thread while the pipeline thread sits in ``wait``.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self._clock = clock
        self._condition = threading.Condition()
        self._request: ApprovalRequest | None = None
        self._listeners: list[Callable[[ApprovalRequest], None]] = []

    @property
    def current(self) -> ApprovalRequest | None:
        return self._request

    def subscribe(self, listener: Callable[[ApprovalRequest], None]) -> None:
        """Call ``listener`` once the request is resolved."""
        self._listeners.append(listener)

    def request(
        self,
        run_id: str,
        prompt: str,
        approvers: set[str] | frozenset[str] | list[str],
        deadline: datetime,
    ) -> ApprovalRequest:
        """Open the approval request.

        Args:
            run_id: Run awaiting promotion
            prompt: Question shown to approvers
            approvers: Allowed actors; empty means anyone
            deadline: Time after which the request resolves to timed_out

        Returns:
            The pending ApprovalRequest
        """
        with self._condition:
            if self._request is not None:
                raise ValueError(f"Approval already requested for run {self._request.run_id}")
            self._request = ApprovalRequest(
                request_id=uuid.uuid4().hex[:12],
                run_id=run_id,
                prompt=prompt,
                approvers=sorted(approvers),
                requested_at=self._clock(),
                deadline=deadline,
            )
            logger.info(
                "APPROVAL: Requested for %s (approvers: %s, deadline %s)",
                run_id,
                ", ".join(self._request.approvers) or "anyone",
                deadline.isoformat(timespec="seconds"),
            )
            return self._request

    def resolve(self, decision: Decision | str, actor: str, notes: str | None = None) -> ApprovalRequest:
        """Record a decision.

        Args:
            decision: approve or reject
            actor: Identity recorded with the decision
            notes: Optional free text

        Raises:
            AlreadyResolved: The request already has a resolution
            Unauthorized: A restricted approver set does not include ``actor``
            ApprovalTimedOut: The deadline passed before this decision arrived
        """
        decision = Decision(decision)
        with self._condition:
            request = self._require_request()
            if request.is_resolved:
                raise AlreadyResolved(
                    f"Approval for {request.run_id} already {request.status.value}"
                    + (f" by {request.resolved_by}" if request.resolved_by else "")
                )
            if self._clock() >= request.deadline:
                self._finish(request, ApprovalStatus.TIMED_OUT)
                raise ApprovalTimedOut(f"Approval for {request.run_id} expired at {request.deadline.isoformat()}")
            if not request.allows(actor):
                logger.warning("APPROVAL: %s is not an authorized approver for %s", actor, request.run_id)
                raise Unauthorized(f"{actor} is not allowed to approve {request.run_id}")

            status = ApprovalStatus.APPROVED if decision == Decision.APPROVE else ApprovalStatus.REJECTED
            self._finish(request, status, actor=actor, notes=notes)
            return request

    def wait(self) -> ApprovalRequest:
        """Block until the request is resolved or its deadline passes.

        Returns:
            The resolved request (approved, rejected or timed_out)
        """
        with self._condition:
            request = self._require_request()
            while not request.is_resolved:
                remaining = (request.deadline - self._clock()).total_seconds()
                if remaining <= 0:
                    self._finish(request, ApprovalStatus.TIMED_OUT)
                    break
                self._condition.wait(timeout=remaining)
            return request

    def _require_request(self) -> ApprovalRequest:
        if self._request is None:
            raise ValueError("No approval has been requested")
        return self._request

    def _finish(
        self,
        request: ApprovalRequest,
        status: ApprovalStatus,
        actor: str | None = None,
        notes: str | None = None,
    ) -> None:
        # Caller holds the condition
        request.status = status
        request.resolved_by = actor
        request.resolved_at = self._clock()
        request.notes = notes
        logger.info(
            "APPROVAL: %s %s%s", request.run_id, status.value, f" by {actor}" if actor else ""
        )
        self._condition.notify_all()
        for listener in self._listeners:
            try:
                listener(request)
            except Exception:
                logger.exception("APPROVAL: Listener failed")
