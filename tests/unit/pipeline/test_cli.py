"""Tests for pipeline/cli.py: typer commands."""

from __future__ import annotations

import json
import textwrap
from datetime import datetime, timedelta

import pytest
from typer.testing import CliRunner

from orchestrator.approval_gate import ApprovalGate
from orchestrator.checkpoints import REQUEST_FILE
from orchestrator.state_machine import StateMachine
from pipeline.cli import app
from schemas.pipeline_state import PipelineRun, RunState, StageStatus

runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("SHIPLINE_RUNS_DIR", "SHIPLINE_APPROVERS", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "shipline.toml"
    path.write_text(
        textwrap.dedent(
            """
            [project]
            name = "shop"

            [pipeline]
            runs_dir = "runs"

            [[build_test.steps]]
            name = "unit-tests"
            command = "true"

            [targets.staging]
            role = "staging"
            host = "staging.internal"
            release_path = "/srv/releases/release-{run}"
            current_path = "/srv/current"
            """
        )
    )
    return path


@pytest.fixture
def pending_run(tmp_path):
    """Run directory with an open approval request for alice."""
    run_dir = tmp_path / "runs" / "shop-42"
    run = PipelineRun(run_id="shop-42", run_number=42, project="shop")
    machine = StateMachine(run, run_dir)
    for state in (RunState.BUILD_TEST, RunState.QUALITY_GATES, RunState.ARCHIVE, RunState.STAGING_DEPLOY):
        machine.finish_stage(machine.begin_stage(state), StageStatus.PASSED)
    machine.begin_stage(RunState.AWAITING_APPROVAL)

    gate = ApprovalGate()
    request = gate.request("shop-42", "Promote?", {"alice"}, datetime.now() + timedelta(hours=1))
    (run_dir / REQUEST_FILE).write_text(request.model_dump_json())
    return run_dir


class TestApproveReject:
    def test_approve_writes_decision(self, config_file, pending_run):
        result = runner.invoke(app, ["approve", "shop-42", "--actor", "alice", "--notes", "ok", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        decision = json.loads((pending_run / "decision.json").read_text())
        assert decision == {"decision": "approve", "actor": "alice", "notes": "ok"}

    def test_reject_writes_reason(self, config_file, pending_run):
        result = runner.invoke(app, ["reject", "shop-42", "--actor", "alice", "--reason", "broken", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert json.loads((pending_run / "decision.json").read_text())["decision"] == "reject"

    def test_unauthorized_actor(self, config_file, pending_run):
        result = runner.invoke(app, ["approve", "shop-42", "--actor", "mallory", "--config", str(config_file)])

        assert result.exit_code == 1
        assert not (pending_run / "decision.json").exists()

    def test_unknown_run(self, config_file):
        result = runner.invoke(app, ["approve", "shop-7", "--actor", "alice", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "Run not found" in result.output


class TestInspection:
    def test_runs_lists_run(self, config_file, pending_run):
        result = runner.invoke(app, ["runs", "--config", str(config_file)])
        assert result.exit_code == 0, result.output
        assert "shop-42" in result.output

    def test_show_run(self, config_file, pending_run):
        result = runner.invoke(app, ["show", "shop-42", "--config", str(config_file)])
        assert result.exit_code == 0, result.output
        assert "awaiting_approval" in result.output

    def test_standby_without_record(self, config_file):
        result = runner.invoke(app, ["standby", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "No standby release" in result.output

    def test_config_show(self, config_file):
        result = runner.invoke(app, ["config-show", "--config", str(config_file)])
        assert result.exit_code == 0, result.output
        assert "project.name" in result.output

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestRunCommand:
    def test_bad_config_exits_nonzero(self, tmp_path):
        path = tmp_path / "shipline.toml"
        path.write_text('[build_test]\ncleanup_policy = "sometimes"\n')
        result = runner.invoke(app, ["run", "1", "--config", str(path), "--no-interactive"])
        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_failed_run_exits_one(self, tmp_path):
        path = tmp_path / "shipline.toml"
        path.write_text(
            textwrap.dedent(
                """
                [project]
                name = "shop"

                [pipeline]
                runs_dir = "runs"

                [[build_test.steps]]
                name = "unit-tests"
                command = "exit 1"
                """
            )
        )
        result = runner.invoke(app, ["run", "1", "--config", str(path), "--no-interactive"])

        assert result.exit_code == 1
        state = json.loads((tmp_path / "runs" / "shop-1" / "state.json").read_text())
        assert state["state"] == "failed"

    def test_rollback_unknown_target(self, config_file):
        result = runner.invoke(app, ["rollback", "web-z", "--to", "release-1", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "Unknown target" in result.output
