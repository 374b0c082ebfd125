"""Stage execution with guaranteed cleanup."""

import logging
from dataclasses import dataclass
from typing import Callable

from rich.console import Console

from schemas.definitions import CleanupPolicy, StageDefinition
from schemas.pipeline_state import FailureInfo, RunState, StageResult, StageStatus, StepResult
from tools.errors import PipelineError, StepFailed
from tools.parallel import ParallelGroup
from tools.sidecar import ResourceLifecycleManager, SidecarHandle
from tools.step_executor import StepEnvironment, StepExecutor

from .state_machine import StateMachine

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """What a stage's work sees while it runs."""

    env: StepEnvironment
    result: StageResult
    sidecar: SidecarHandle | None = None


StageWork = Callable[[StageContext], None]


class StageRunner:
    """Sequences stages through the run state machine.

    For each stage it acquires the sidecar (if any), runs the steps or the
    given work, and then, on every exit path, runs cleanup steps according
    to the stage's policy and releases the sidecar. Cleanup problems become
    warnings and never change a stage's status. A failed stage fails the
    run; the state machine refuses to start any later stage.
    """

    def __init__(
        self,
        state_machine: StateMachine,
        executor: StepExecutor,
        resources: ResourceLifecycleManager,
        parallel: ParallelGroup | None = None,
        console: Console | None = None,
    ) -> None:
        self.state_machine = state_machine
        self.executor = executor
        self.resources = resources
        self.parallel = parallel or ParallelGroup(executor)
        self.console = console or Console()

    @property
    def run(self):
        return self.state_machine.run

    def execute(
        self,
        state: RunState,
        env: StepEnvironment,
        stage: StageDefinition | None = None,
        work: StageWork | None = None,
    ) -> StageResult:
        """Run one stage.

        Args:
            state: Run state the stage corresponds to
            env: Base working environment
            stage: Steps, sidecar and cleanup for the stage
            work: Additional in-process work (archive, deploy, approval)

        Returns:
            The stage's terminal result

        Raises:
            InvalidTransition: The previous stage did not pass
        """
        result = self.state_machine.begin_stage(state)
        handle: SidecarHandle | None = None
        stage_env = env
        passed = False

        try:
            if stage is not None and stage.sidecar is not None:
                handle = self.resources.acquire(stage.sidecar, env, owner=f"{self.run.run_id}-{state.value}")
                result.sidecar = handle.name
                stage_env = env.with_variables(handle.variables)
                self.state_machine.save_state()

            context = StageContext(env=stage_env, result=result, sidecar=handle)
            if stage is not None and stage.steps:
                self._run_steps(stage, context)
            if work is not None:
                work(context)
            passed = True

        except PipelineError as e:
            logger.error("PIPELINE: Stage %s failed: %s", state.value, e.message)
            self._record_failure(result, type(e).__name__, e.message, e.output)
        except Exception as e:
            logger.exception("PIPELINE: Internal error in stage %s", state.value)
            self._record_failure(result, "InternalError", str(e), None)

        finally:
            if stage is not None:
                self._run_cleanup(stage, stage_env, result, passed)
            if handle is not None:
                warning = self.resources.release(handle, env)
                if warning:
                    result.warnings.append(warning)

        self.state_machine.finish_stage(result, StageStatus.PASSED if passed else StageStatus.FAILED)
        self.run.warnings.extend(f"{state.value}: {w}" for w in result.warnings)
        self._print_stage_end(result)

        if not passed:
            self._fail_run(result)
        return result

    def _run_steps(self, stage: StageDefinition, context: StageContext) -> None:
        if stage.parallel:
            group = self.parallel.run(stage.steps, context.env)
            context.result.steps.extend(group.results)
            self.state_machine.write_report(
                stage.name,
                {
                    "stage": stage.name,
                    "status": group.status.value,
                    "duration": group.duration,
                    "results": [r.model_dump(mode="json") for r in group.results],
                },
            )
            for step_result in group.results:
                self._print_step(step_result)
            if group.failures:
                raise StepFailed(group.failures[0])
            return

        for step in stage.steps:
            step_result = self.executor.run(step, context.env)
            context.result.steps.append(step_result)
            self.state_machine.save_state()
            self._print_step(step_result)
            if not step_result.passed:
                raise StepFailed(step_result)

    def _run_cleanup(
        self,
        stage: StageDefinition,
        env: StepEnvironment,
        result: StageResult,
        passed: bool,
    ) -> None:
        policy = stage.cleanup_policy
        if policy == CleanupPolicy.ON_SUCCESS and not passed:
            return
        if policy == CleanupPolicy.ON_FAILURE and passed:
            return

        for step in stage.cleanup_steps:
            try:
                outcome = self.executor.run(step, env)
            except Exception as e:
                logger.warning("PIPELINE: Cleanup step %s raised: %s", step.name, e)
                result.warnings.append(f"Cleanup step '{step.name}' error: {e}")
                continue
            if not outcome.passed:
                logger.warning("PIPELINE: Cleanup step %s failed (exit %s)", step.name, outcome.exit_code)
                result.warnings.append(f"Cleanup step '{step.name}' failed (exit {outcome.exit_code})")

    def _record_failure(self, result: StageResult, error_type: str, message: str, output: str | None) -> None:
        result.error_type = error_type
        result.error = message
        result.output = output

    def _fail_run(self, result: StageResult) -> None:
        if self.run.failure is None:
            failed_step = next((s.name for s in result.steps if not s.passed), None)
            self.run.failure = FailureInfo(
                stage=result.name,
                error_type=result.error_type or "InternalError",
                message=result.error or "Stage failed",
                step=failed_step,
                output=result.output,
            )
        self.state_machine.fail()

    def _print_step(self, step: StepResult) -> None:
        mark = "[green]✓[/green]" if step.passed else "[red]✗[/red]"
        self.console.print(f"  {mark} {step.name} [dim]({step.status.value}, {step.duration:.1f}s)[/dim]")

    def _print_stage_end(self, result: StageResult) -> None:
        color = "green" if result.status == StageStatus.PASSED else "red"
        self.console.print(f"[{color}]{result.name}: {result.status.value}[/{color}]")
        for warning in result.warnings:
            self.console.print(f"[yellow]  warning: {warning}[/yellow]")
