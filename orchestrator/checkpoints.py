"""Approval channels that feed decisions into the approval gate.

Supports:
- File-based approvals (a decision file written by ``shipline approve``
  from any shell, for gates that stay open for hours)
- CLI prompts (interactive, in the terminal running the pipeline)
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from schemas.approval import ApprovalRequest, Decision
from tools.errors import AlreadyResolved, ApprovalTimedOut, PipelineError, Unauthorized

from .approval_gate import ApprovalGate

logger = logging.getLogger(__name__)

REQUEST_FILE = "approval.json"
DECISION_FILE = "decision.json"


class ApprovalChannel(ABC):
    """Source of human decisions for an open approval request."""

    @abstractmethod
    def start(self, gate: ApprovalGate, request: ApprovalRequest) -> None:
        """Begin delivering decisions to ``gate``. Must not block."""
        ...

    def stop(self) -> None:
        """Stop delivering decisions."""


class FileApprovalChannel(ApprovalChannel):
    """Publishes the request to the run directory and watches for a decision file."""

    def __init__(self, run_dir: Path, poll_interval: float = 5.0) -> None:
        """Initialize file channel.

        Args:
            run_dir: Run directory holding approval.json / decision.json
            poll_interval: Seconds between checks for a decision
        """
        self.run_dir = Path(run_dir)
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._rejected_count = 0

    def start(self, gate: ApprovalGate, request: ApprovalRequest) -> None:
        self.run_dir.mkdir(parents=True, exist_ok=True)
        (self.run_dir / REQUEST_FILE).write_text(request.model_dump_json(indent=2))
        gate.subscribe(self._publish)
        self._thread = threading.Thread(
            target=self._watch, args=(gate,), name=f"approval-{request.run_id}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_interval + 1)

    def _publish(self, request: ApprovalRequest) -> None:
        (self.run_dir / REQUEST_FILE).write_text(request.model_dump_json(indent=2))

    def _watch(self, gate: ApprovalGate) -> None:
        decision_file = self.run_dir / DECISION_FILE
        while not self._stop.is_set():
            if decision_file.exists():
                if self._apply(gate, decision_file):
                    return
            self._stop.wait(self.poll_interval)

    def _apply(self, gate: ApprovalGate, decision_file: Path) -> bool:
        """Apply a decision file. Returns True when the gate is resolved."""
        try:
            data = json.loads(decision_file.read_text())
            gate.resolve(data["decision"], data["actor"], data.get("notes"))
            return True
        except Unauthorized as e:
            logger.warning("APPROVAL: Ignoring decision file: %s", e.message)
        except (AlreadyResolved, ApprovalTimedOut):
            return True
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("APPROVAL: Malformed decision file %s: %s", decision_file, e)

        self._rejected_count += 1
        decision_file.replace(self.run_dir / f"decision.rejected-{self._rejected_count}.json")
        return False


def load_request(run_dir: Path) -> ApprovalRequest | None:
    """Read the approval request published for a run."""
    path = Path(run_dir) / REQUEST_FILE
    if not path.exists():
        return None
    return ApprovalRequest.model_validate_json(path.read_text())


def submit_decision(run_dir: Path, decision: Decision | str, actor: str, notes: str | None = None) -> Path:
    """Write a decision for a pending run, checking the allow-list first.

    Args:
        run_dir: Run directory of the waiting pipeline
        decision: approve or reject
        actor: Identity recorded with the decision
        notes: Optional notes or rejection reason

    Returns:
        Path to the written decision file

    Raises:
        PipelineError: No pending request for the run
        AlreadyResolved: The request is already resolved
        Unauthorized: ``actor`` is not an allowed approver
    """
    decision = Decision(decision)
    request = load_request(run_dir)
    if request is None:
        raise PipelineError(f"No approval is pending in {run_dir}")
    if request.is_resolved:
        raise AlreadyResolved(f"Approval for {request.run_id} already {request.status.value}")
    if not request.allows(actor):
        raise Unauthorized(f"{actor} is not allowed to approve {request.run_id}")

    path = Path(run_dir) / DECISION_FILE
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps({"decision": decision.value, "actor": actor, "notes": notes}, indent=2))
    tmp.replace(path)
    return path


class ConsoleApprovalChannel(ApprovalChannel):
    """Interactive CLI approval prompt on a background thread."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self._thread: threading.Thread | None = None

    def start(self, gate: ApprovalGate, request: ApprovalRequest) -> None:
        self._thread = threading.Thread(
            target=self._prompt, args=(gate, request), name="approval-console", daemon=True
        )
        self._thread.start()

    def _prompt(self, gate: ApprovalGate, request: ApprovalRequest) -> None:
        self.console.print()
        self.console.print(
            Panel(
                f"[bold yellow]{request.prompt}[/bold yellow]\n\n"
                f"Run: {request.run_id}\n"
                f"Approvers: {', '.join(request.approvers) or 'anyone'}\n"
                f"Deadline: {request.deadline.isoformat(timespec='seconds')}",
                title="Approval Required",
                border_style="yellow",
            )
        )
        self.console.print("[bold]Options:[/bold]")
        self.console.print("  [green]y/yes[/green] - Approve and promote to production")
        self.console.print("  [red]n/no[/red] - Reject and stop")
        self.console.print()

        while not request.is_resolved:
            actor = Prompt.ask("Your name")
            choice = Prompt.ask("Your decision", choices=["y", "yes", "n", "no"], default="n")
            if choice in ("y", "yes"):
                decision, notes = Decision.APPROVE, Prompt.ask("Any notes? (optional)", default="") or None
            else:
                decision, notes = Decision.REJECT, Prompt.ask("Reason for rejection")
            try:
                gate.resolve(decision, actor, notes)
            except Unauthorized as e:
                self.console.print(f"[red]{e.message}[/red]")
            except (AlreadyResolved, ApprovalTimedOut) as e:
                self.console.print(f"[yellow]{e.message}[/yellow]")
                return
