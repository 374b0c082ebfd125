"""Shared test fixtures for unit tests.

Steps run real shell commands against temp workspaces; deployment targets
use the local transport so releases land under the test's temp directory.
"""

from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest

from schemas.definitions import (
    RemoteTarget,
    RunConfig,
    SidecarSpec,
    StageDefinition,
    Step,
    TargetRole,
)
from tools.step_executor import StepEnvironment

# Unpack with the interpreter's zipfile module so tests need no unzip binary
UNPACK_COMMAND = f'{shlex.quote(sys.executable)} -m zipfile -e "$ARTIFACT_PATH" "$RELEASE_DIR"'


# === FIXTURES: Workspace ===


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Small application checkout with content that must be excluded."""
    ws = tmp_path / "workspace"
    (ws / "app").mkdir(parents=True)
    (ws / "app" / "index.php").write_text("<?php echo 'hello';\n")
    (ws / "app" / "Kernel.php").write_text("<?php class Kernel {}\n")
    (ws / "composer.json").write_text('{"name": "acme/shop"}\n')
    (ws / ".git").mkdir()
    (ws / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (ws / "vendor" / "lib").mkdir(parents=True)
    (ws / "vendor" / "lib" / "big.php").write_text("<?php // vendored\n")
    (ws / "tests" / "fixtures").mkdir(parents=True)
    (ws / "tests" / "fixtures" / "dump.sql").write_text("INSERT INTO t VALUES (1);\n")
    (ws / "tests" / "UnitTest.php").write_text("<?php class UnitTest {}\n")
    (ws / "Jenkinsfile").write_text("pipeline {}\n")
    return ws


@pytest.fixture
def env(workspace: Path) -> StepEnvironment:
    return StepEnvironment(workspace=workspace, variables={"RUN_ID": "shop-42"})


# === FIXTURES: Definitions ===


def make_step(name: str, command: str, timeout: float = 30.0) -> Step:
    return Step(name=name, command=command, timeout=timeout)


@pytest.fixture
def sidecar_spec(tmp_path: Path) -> SidecarSpec:
    """Sidecar whose lifecycle is a marker file; ready as soon as it exists."""
    marker = tmp_path / "sidecar.up"
    log = tmp_path / "sidecar.log"
    return SidecarSpec(
        kind="mysql",
        start_command=f'touch {marker} && echo "start $SIDECAR_NAME" >> {log}',
        readiness_probe=f"test -f {marker}",
        stop_command=f'rm -f {marker} && echo "stop $SIDECAR_NAME" >> {log}',
        poll_interval=0.01,
        max_attempts=3,
        command_timeout=10,
    )


def local_target(root: Path, name: str, role: TargetRole, **overrides) -> RemoteTarget:
    host_dir = root / "hosts" / name
    values = {
        "name": name,
        "role": role,
        "host": f"{name}.internal",
        "release_path": str(host_dir / "releases" / "release-{run}"),
        "current_path": str(host_dir / "current"),
        "transfer_dir": str(host_dir / "tmp"),
        "unpack_command": UNPACK_COMMAND,
        "transport": "local",
        "timeout": 60,
    }
    values.update(overrides)
    return RemoteTarget(**values)


@pytest.fixture
def targets(tmp_path: Path) -> tuple[RemoteTarget, ...]:
    return (
        local_target(tmp_path, "staging", TargetRole.STAGING),
        local_target(tmp_path, "web-a", TargetRole.PRODUCTION_ACTIVE),
        local_target(tmp_path, "web-b", TargetRole.PRODUCTION_STANDBY),
    )


@pytest.fixture
def make_run_config(tmp_path: Path, workspace: Path, targets):
    """Factory for RunConfig with passing stages unless overridden."""

    def _make(run_number: int = 42, **overrides) -> RunConfig:
        values = {
            "project": "shop",
            "run_number": run_number,
            "workspace": workspace,
            "runs_dir": tmp_path / "runs",
            "artifact_dir": tmp_path / "artifacts",
            "exclusions": (".git", "vendor", "tests/fixtures", "Jenkinsfile"),
            "build_test": StageDefinition(
                name="build_test",
                steps=(
                    make_step("install", "echo installing"),
                    make_step("unit-tests", "test -f app/index.php"),
                ),
            ),
            "quality_gates": StageDefinition(
                name="quality_gates",
                parallel=True,
                steps=(
                    make_step("lint", "true"),
                    make_step("static-analysis", "true"),
                    make_step("copy-paste", "true"),
                    make_step("complexity", "true"),
                ),
            ),
            "targets": targets,
            "approvers": frozenset({"alice"}),
            "approval_timeout_seconds": 30,
            "approval_poll_interval": 0.05,
        }
        values.update(overrides)
        return RunConfig(**values)

    return _make
