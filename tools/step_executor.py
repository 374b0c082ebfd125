"""Step execution: the atomic unit of pipeline work."""

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path

from schemas.definitions import Step
from schemas.pipeline_state import StepResult, StepStatus

logger = logging.getLogger(__name__)


@dataclass
class StepEnvironment:
    """Working environment a step runs against."""

    workspace: Path
    variables: dict[str, str] = field(default_factory=dict)

    def with_variables(self, extra: dict[str, str]) -> "StepEnvironment":
        """Copy with additional variables layered on top."""
        return StepEnvironment(workspace=self.workspace, variables={**self.variables, **extra})


class StepExecutor:
    """Runs shell-level commands against a workspace.

    The executor knows nothing about what a command does; a step succeeds
    when it exits zero within its timeout. stdout and stderr are captured
    together so the output reads in the order it was produced.
    """

    def __init__(self, inherit_env: bool = True) -> None:
        """Initialize step executor.

        Args:
            inherit_env: Start from the orchestrator's own environment
        """
        self.inherit_env = inherit_env

    def run(self, step: Step, env: StepEnvironment) -> StepResult:
        """Execute a step synchronously.

        Args:
            step: Step to execute
            env: Working directory and variables

        Returns:
            StepResult; a non-zero exit or timeout yields a non-passing status
        """
        cwd = env.workspace / step.working_dir if step.working_dir else env.workspace
        run_env = dict(os.environ) if self.inherit_env else {}
        run_env.update(env.variables)
        run_env.update(step.env)

        logger.info("STEP: Starting %s: %s", step.name, step.command)
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                step.command,
                shell=True,
                cwd=cwd,
                env=run_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                start_new_session=True,
            )
        except OSError as e:
            logger.error("STEP: %s could not start: %s", step.name, e)
            return StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                exit_code=127,
                output=str(e),
                duration=time.monotonic() - start,
            )

        try:
            output, _ = proc.communicate(timeout=step.timeout)
        except subprocess.TimeoutExpired:
            # Kill the whole process group so grandchildren release the pipe
            self._kill_group(proc)
            output, _ = proc.communicate()
            duration = time.monotonic() - start
            logger.warning("STEP: %s timed out after %.1fs", step.name, step.timeout)
            return StepResult(
                name=step.name,
                status=StepStatus.TIMED_OUT,
                exit_code=None,
                output=(output or "") + f"\nTimed out after {step.timeout}s",
                duration=duration,
            )

        duration = time.monotonic() - start
        status = StepStatus.PASSED if proc.returncode == 0 else StepStatus.FAILED
        logger.info(
            "STEP: %s finished: exit=%s duration=%.2fs", step.name, proc.returncode, duration
        )
        return StepResult(
            name=step.name,
            status=status,
            exit_code=proc.returncode,
            output=output or "",
            duration=duration,
        )

    @staticmethod
    def _kill_group(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
