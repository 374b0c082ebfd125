"""State machine implementation for pipeline runs."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from schemas.pipeline_state import (
    STAGE_ORDER,
    PipelineRun,
    RunState,
    StageResult,
    StageStatus,
)
from tools.errors import InvalidTransition

logger = logging.getLogger(__name__)


@dataclass
class Transition:
    """Defines a valid state transition."""

    from_state: RunState
    to_state: RunState
    condition: Callable[[PipelineRun], bool] | None = None


def _previous_stage_passed(run: PipelineRun) -> bool:
    last = run.last_stage()
    return last is not None and last.status == StageStatus.PASSED


class StateMachine:
    """State machine for one pipeline run.

    Manages:
    - Valid state transitions (strictly sequential, any state may fail)
    - Stage result bookkeeping
    - State persistence after every change
    """

    # Happy path: each stage may only follow a passed predecessor
    TRANSITIONS: list[Transition] = [
        Transition(RunState.INIT, RunState.BUILD_TEST),
        Transition(RunState.BUILD_TEST, RunState.QUALITY_GATES, _previous_stage_passed),
        Transition(RunState.QUALITY_GATES, RunState.ARCHIVE, _previous_stage_passed),
        Transition(RunState.ARCHIVE, RunState.STAGING_DEPLOY, _previous_stage_passed),
        Transition(RunState.STAGING_DEPLOY, RunState.AWAITING_APPROVAL, _previous_stage_passed),
        Transition(RunState.AWAITING_APPROVAL, RunState.PROD_DEPLOY, _previous_stage_passed),
        Transition(RunState.PROD_DEPLOY, RunState.COMPLETE, _previous_stage_passed),
    ] + [Transition(state, RunState.FAILED) for state in (RunState.INIT, *STAGE_ORDER)]

    # States that suspend on human input rather than automated work
    APPROVAL_STATES = {RunState.AWAITING_APPROVAL}

    def __init__(self, run: PipelineRun, run_dir: Path) -> None:
        """Initialize state machine.

        Args:
            run: Pipeline run to drive
            run_dir: Directory to store state.json and reports
        """
        self.run = run
        self.run_dir = Path(run_dir)
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self._transition_map: dict[RunState, list[Transition]] = {}
        for t in self.TRANSITIONS:
            self._transition_map.setdefault(t.from_state, []).append(t)

    def can_transition(self, to_state: RunState) -> bool:
        """Check if transition to target state is valid right now."""
        for t in self._transition_map.get(self.run.state, []):
            if t.to_state == to_state:
                return t.condition is None or t.condition(self.run)
        return False

    def transition(self, to_state: RunState) -> None:
        """Move the run to a new state.

        Raises:
            InvalidTransition: The move is not allowed from the current state
        """
        if not self.can_transition(to_state):
            raise InvalidTransition(
                f"Cannot move run {self.run.run_id} from {self.run.state.value} to {to_state.value}"
            )
        logger.info("PIPELINE: %s %s -> %s", self.run.run_id, self.run.state.value, to_state.value)
        self.run.state = to_state
        if self.run.is_terminal:
            self.run.ended_at = datetime.now()
        self.save_state()

    def begin_stage(self, state: RunState) -> StageResult:
        """Enter a stage state and record it as running."""
        self.transition(state)
        result = StageResult(name=state.value, status=StageStatus.RUNNING, started_at=datetime.now())
        self.run.stages.append(result)
        self.save_state()
        return result

    def finish_stage(self, result: StageResult, status: StageStatus) -> None:
        """Record a stage's terminal status."""
        result.status = status
        result.completed_at = datetime.now()
        if result.started_at:
            result.duration_seconds = (result.completed_at - result.started_at).total_seconds()
        self.save_state()

    def fail(self) -> None:
        """Mark the run failed and record the remaining stages as skipped."""
        executed = {s.name for s in self.run.stages}
        for state in STAGE_ORDER:
            if state.value not in executed:
                self.run.stages.append(StageResult(name=state.value, status=StageStatus.SKIPPED))
        self.transition(RunState.FAILED)

    def is_completed(self) -> bool:
        return self.run.state == RunState.COMPLETE

    def is_failed(self) -> bool:
        return self.run.state == RunState.FAILED

    def is_approval_state(self) -> bool:
        return self.run.state in self.APPROVAL_STATES

    @property
    def state_file(self) -> Path:
        return self.run_dir / "state.json"

    def save_state(self) -> Path:
        """Persist state to disk.

        Returns:
            Path to state file
        """
        data = self.run.model_dump(mode="json")
        tmp = self.state_file.with_suffix(".json.tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
        tmp.replace(self.state_file)
        return self.state_file

    def write_report(self, name: str, payload: dict[str, Any]) -> Path:
        """Write a stage report under reports/."""
        reports = self.run_dir / "reports"
        reports.mkdir(exist_ok=True)
        path = reports / f"{name}.json"
        path.write_text(json.dumps(payload, indent=2, default=str))
        return path

    @classmethod
    def load_state(cls, run_dir: Path) -> "StateMachine":
        """Load a run from disk for audit.

        Args:
            run_dir: Directory containing state.json
        """
        state_file = Path(run_dir) / "state.json"
        with open(state_file) as f:
            run = PipelineRun.model_validate(json.load(f))
        return cls(run, run_dir)

    def get_progress_summary(self) -> dict[str, Any]:
        """Get a summary of run progress."""
        passed = sum(1 for s in self.run.stages if s.status == StageStatus.PASSED)
        total = len(STAGE_ORDER)
        return {
            "run_id": self.run.run_id,
            "state": self.run.state.value,
            "progress": f"{passed}/{total}",
            "progress_percent": round(passed / total * 100),
            "stages": {s.name: s.status.value for s in self.run.stages},
        }
