"""Tests for orchestrator/state_machine.py: StateMachine."""

from __future__ import annotations

import json

import pytest

from orchestrator.state_machine import StateMachine
from schemas.pipeline_state import PipelineRun, RunState, StageStatus
from tools.errors import InvalidTransition


@pytest.fixture
def machine(tmp_path):
    run = PipelineRun(run_id="shop-42", run_number=42, project="shop")
    return StateMachine(run, tmp_path / "shop-42")


class TestTransitions:
    def test_first_stage_from_init(self, machine):
        assert machine.can_transition(RunState.BUILD_TEST)
        assert not machine.can_transition(RunState.QUALITY_GATES)

    def test_next_stage_requires_passed_predecessor(self, machine):
        result = machine.begin_stage(RunState.BUILD_TEST)
        assert not machine.can_transition(RunState.QUALITY_GATES)

        machine.finish_stage(result, StageStatus.PASSED)
        assert machine.can_transition(RunState.QUALITY_GATES)

    def test_failed_stage_blocks_successor(self, machine):
        result = machine.begin_stage(RunState.BUILD_TEST)
        machine.finish_stage(result, StageStatus.FAILED)
        with pytest.raises(InvalidTransition):
            machine.begin_stage(RunState.QUALITY_GATES)

    def test_cannot_skip_stages(self, machine):
        machine.finish_stage(machine.begin_stage(RunState.BUILD_TEST), StageStatus.PASSED)
        with pytest.raises(InvalidTransition):
            machine.transition(RunState.STAGING_DEPLOY)

    def test_complete_only_after_prod_deploy(self, machine):
        for state in (
            RunState.BUILD_TEST,
            RunState.QUALITY_GATES,
            RunState.ARCHIVE,
            RunState.STAGING_DEPLOY,
            RunState.AWAITING_APPROVAL,
        ):
            machine.finish_stage(machine.begin_stage(state), StageStatus.PASSED)
            assert not machine.can_transition(RunState.COMPLETE)
        machine.finish_stage(machine.begin_stage(RunState.PROD_DEPLOY), StageStatus.PASSED)
        machine.transition(RunState.COMPLETE)

        assert machine.is_completed()
        assert machine.run.ended_at is not None

    def test_terminal_states_have_no_exit(self, machine):
        machine.fail()
        assert machine.is_failed()
        with pytest.raises(InvalidTransition):
            machine.transition(RunState.BUILD_TEST)


class TestFail:
    def test_fail_marks_remaining_stages_skipped(self, machine):
        machine.finish_stage(machine.begin_stage(RunState.BUILD_TEST), StageStatus.PASSED)
        machine.finish_stage(machine.begin_stage(RunState.QUALITY_GATES), StageStatus.FAILED)

        machine.fail()

        statuses = {s.name: s.status for s in machine.run.stages}
        assert statuses["build_test"] == StageStatus.PASSED
        assert statuses["quality_gates"] == StageStatus.FAILED
        for name in ("archive", "staging_deploy", "awaiting_approval", "prod_deploy"):
            assert statuses[name] == StageStatus.SKIPPED

    def test_approval_state(self, machine):
        for state in (RunState.BUILD_TEST, RunState.QUALITY_GATES, RunState.ARCHIVE, RunState.STAGING_DEPLOY):
            machine.finish_stage(machine.begin_stage(state), StageStatus.PASSED)
        machine.begin_stage(RunState.AWAITING_APPROVAL)
        assert machine.is_approval_state()


class TestPersistence:
    def test_state_written_on_transition(self, machine):
        machine.begin_stage(RunState.BUILD_TEST)
        data = json.loads(machine.state_file.read_text())
        assert data["state"] == "build_test"
        assert data["stages"][0]["status"] == "running"

    def test_load_state_round_trip(self, machine):
        machine.finish_stage(machine.begin_stage(RunState.BUILD_TEST), StageStatus.PASSED)
        loaded = StateMachine.load_state(machine.run_dir)
        assert loaded.run.state == RunState.BUILD_TEST
        assert loaded.can_transition(RunState.QUALITY_GATES)

    def test_write_report(self, machine):
        path = machine.write_report("quality_gates", {"status": "passed"})
        assert path == machine.run_dir / "reports" / "quality_gates.json"
        assert json.loads(path.read_text()) == {"status": "passed"}

    def test_progress_summary(self, machine):
        machine.finish_stage(machine.begin_stage(RunState.BUILD_TEST), StageStatus.PASSED)
        summary = machine.get_progress_summary()
        assert summary["progress"] == "1/6"
        assert summary["stages"] == {"build_test": "passed"}
