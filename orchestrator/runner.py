"""Pipeline orchestrator: build, verify, package, stage, gate and promote."""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from rich.console import Console

from schemas.approval import ApprovalStatus
from schemas.artifact import Artifact
from schemas.definitions import RemoteTarget, RunConfig, TargetRole
from schemas.deployment import StandbyRecord
from schemas.pipeline_state import FailureInfo, PipelineRun, RunState, StageStatus
from tools.artifact_store import ArtifactStore
from tools.deploy import DeploymentExecutor
from tools.errors import (
    ApprovalRejected,
    ApprovalTimedOut,
    ArtifactNotFound,
    InvalidTarget,
    InvalidTransition,
    RunExists,
)
from tools.release_ledger import ReleaseLedger
from tools.sidecar import ResourceLifecycleManager
from tools.step_executor import StepEnvironment, StepExecutor

from .approval_gate import ApprovalGate
from .checkpoints import ApprovalChannel, FileApprovalChannel
from .stage_runner import StageContext, StageRunner, StageWork
from .state_machine import StateMachine

logger = logging.getLogger(__name__)

STAGE_TITLES = {
    RunState.BUILD_TEST: "Build & Test",
    RunState.QUALITY_GATES: "Quality Gates",
    RunState.ARCHIVE: "Archiving Artifact",
    RunState.STAGING_DEPLOY: "Deploying to Staging",
    RunState.AWAITING_APPROVAL: "Awaiting Production Approval",
    RunState.PROD_DEPLOY: "Deploying to Production Standby",
}


class PipelineOrchestrator:
    """Drives one run through build -> test -> gate -> deploy -> promote.

    Stages run strictly in order; the first failure ends the run. The
    artifact is created exactly once, after verification, and each
    deployment stage fetches it again from the store by identifier so that
    staging and production receive the same persisted bytes.
    """

    def __init__(
        self,
        config: RunConfig,
        console: Console | None = None,
        channels: list[ApprovalChannel] | None = None,
        executor: StepExecutor | None = None,
        resources: ResourceLifecycleManager | None = None,
        artifact_store: ArtifactStore | None = None,
        deployer: DeploymentExecutor | None = None,
        ledger: ReleaseLedger | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize orchestrator.

        Args:
            config: Immutable per-run configuration
            console: Rich console for output
            channels: Approval channels (default: file-based in the run dir)
            executor: Step executor shared by all stages
            resources: Sidecar lifecycle manager
            artifact_store: Artifact storage
            deployer: Deployment executor
            ledger: Release ledger (default: under runs_dir)
            clock: Time source for the approval deadline
        """
        self.config = config
        self.console = console or Console()
        self.clock = clock
        self.executor = executor or StepExecutor()
        self.resources = resources or ResourceLifecycleManager(self.executor)
        self.artifact_store = artifact_store or ArtifactStore(config.artifact_dir, config.project)
        self.ledger = ledger or ReleaseLedger(config.runs_dir / "deployments.json")
        self.deployer = deployer or DeploymentExecutor(ledger=self.ledger)
        self.channels = (
            channels
            if channels is not None
            else [FileApprovalChannel(config.run_dir, poll_interval=config.approval_poll_interval)]
        )
        self.gate = ApprovalGate(clock=clock)
        self.state_machine: StateMachine | None = None

    @property
    def run_state(self) -> PipelineRun:
        if self.state_machine is None:
            raise InvalidTransition("Run has not been created")
        return self.state_machine.run

    def create_run(self) -> StateMachine:
        """Create the run record for this triggering event.

        Raises:
            RunExists: A run with this identifier was already started
        """
        run_dir = self.config.run_dir
        if (run_dir / "state.json").exists():
            raise RunExists(f"Run {self.config.run_id} already exists; trigger a new run number")

        run = PipelineRun(
            run_id=self.config.run_id,
            run_number=self.config.run_number,
            project=self.config.project,
        )
        self.state_machine = StateMachine(run, run_dir)
        self.state_machine.save_state()
        return self.state_machine

    def run(self) -> PipelineRun:
        """Execute the pipeline.

        Returns:
            Final run state (COMPLETE or FAILED)
        """
        state_machine = self.create_run()
        run = state_machine.run
        self.console.print(f"[green]Starting run {run.run_id}[/green]")
        logger.info("PIPELINE: Starting run %s", run.run_id)

        stage_runner = StageRunner(
            state_machine,
            executor=self.executor,
            resources=self.resources,
            console=self.console,
        )
        env = StepEnvironment(
            workspace=self.config.workspace,
            variables={
                **self.config.environment,
                "RUN_ID": run.run_id,
                "RUN_NUMBER": str(run.run_number),
                "PROJECT": run.project,
            },
        )

        plan: list[tuple[RunState, Any, StageWork | None]] = [
            (RunState.BUILD_TEST, self.config.build_test, None),
            (RunState.QUALITY_GATES, self.config.quality_gates, None),
            (RunState.ARCHIVE, None, self._archive),
            (RunState.STAGING_DEPLOY, None, self._deploy_staging),
            (RunState.AWAITING_APPROVAL, None, self._await_approval),
            (RunState.PROD_DEPLOY, None, self._deploy_production),
        ]

        try:
            for state, stage, work in plan:
                self._print_stage_start(state)
                result = stage_runner.execute(state, env, stage=stage, work=work)
                if result.status != StageStatus.PASSED:
                    break
            else:
                state_machine.transition(RunState.COMPLETE)
        except KeyboardInterrupt:
            self.console.print("\n[yellow]Pipeline interrupted by user[/yellow]")
            if not run.is_terminal:
                for result in run.stages:
                    if result.status == StageStatus.RUNNING:
                        result.error_type = "Interrupted"
                        result.error = "Interrupted by user"
                        state_machine.finish_stage(result, StageStatus.FAILED)
                        if run.failure is None:
                            run.failure = FailureInfo(
                                stage=result.name, error_type="Interrupted", message="Interrupted by user"
                            )
                state_machine.fail()
            raise

        self._print_summary(run)
        return run

    # --- Stage work ---

    def _archive(self, context: StageContext) -> None:
        """Package the verified workspace once for this run."""
        artifact = self.artifact_store.create(
            self.config.workspace,
            self.config.run_number,
            exclusions=self.config.exclusions,
            run_id=self.config.run_id,
            prune=(self.config.runs_dir,),
        )
        self.run_state.artifact_id = artifact.artifact_id
        self.state_machine.write_report("archive", artifact.model_dump(mode="json"))
        self.console.print(f"  [green]✓[/green] {artifact.filename} ({artifact.file_count} files, {artifact.size_bytes} bytes)")

    def _fetch_run_artifact(self) -> Artifact:
        """Re-read this run's artifact from the store."""
        artifact_id = self.run_state.artifact_id
        if artifact_id is None:
            raise ArtifactNotFound(f"Run {self.config.run_id} has no artifact")
        artifact = self.artifact_store.fetch(artifact_id)
        if artifact.run_id != self.config.run_id:
            raise ArtifactNotFound(f"Artifact {artifact_id} belongs to run {artifact.run_id}, not {self.config.run_id}")
        return artifact

    def _target(self, role: TargetRole) -> RemoteTarget:
        try:
            return self.config.target_for(role)
        except LookupError as e:
            raise InvalidTarget(str(e)) from e

    def _deploy_staging(self, context: StageContext) -> None:
        artifact = self._fetch_run_artifact()
        target = self._target(TargetRole.STAGING)
        result = self.deployer.deploy(artifact, target, run_id=self.config.run_id)
        self.state_machine.write_report("staging_deploy", result.model_dump(mode="json"))
        self.console.print(f"  [green]✓[/green] {target.host}: {target.current_path} -> {result.release_dir}")

    def _await_approval(self, context: StageContext) -> None:
        """Suspend until an authorized human approves, rejects or the deadline passes."""
        deadline = self.clock() + timedelta(seconds=self.config.approval_timeout_seconds)
        request = self.gate.request(
            run_id=self.config.run_id,
            prompt=self.config.approval_prompt,
            approvers=self.config.approvers,
            deadline=deadline,
        )
        self.run_state.approval = request
        self.state_machine.save_state()
        self.console.print(
            f"  [yellow]Waiting for approval until {deadline.isoformat(timespec='seconds')}[/yellow] "
            f"[dim](shipline approve {self.config.run_id} --actor NAME)[/dim]"
        )

        for channel in self.channels:
            channel.start(self.gate, request)
        try:
            resolved = self.gate.wait()
        finally:
            for channel in self.channels:
                channel.stop()

        self.run_state.approval = resolved
        self.state_machine.save_state()

        if resolved.status == ApprovalStatus.APPROVED:
            self.console.print(f"  [green]✓[/green] Approved by {resolved.resolved_by}")
            return
        if resolved.status == ApprovalStatus.TIMED_OUT:
            raise ApprovalTimedOut(f"No decision before {resolved.deadline.isoformat(timespec='seconds')}")
        raise ApprovalRejected(
            f"Rejected by {resolved.resolved_by}" + (f": {resolved.notes}" if resolved.notes else "")
        )

    def _deploy_production(self, context: StageContext) -> None:
        approval = self.run_state.approval
        if approval is None or approval.status != ApprovalStatus.APPROVED or not approval.resolved_by:
            raise ApprovalRejected("Production deployment requires a recorded approval")

        target = self._target(TargetRole.PRODUCTION_STANDBY)
        artifact = self._fetch_run_artifact()
        result = self.deployer.deploy(artifact, target, run_id=self.config.run_id)

        self.ledger.mark_standby(
            StandbyRecord(
                target=target.name,
                host=target.host,
                release_dir=result.release_dir,
                artifact_id=artifact.artifact_id,
                run_id=self.config.run_id,
                approved_by=approval.resolved_by,
            )
        )
        self.run_state.standby_host = target.host
        self.state_machine.write_report("prod_deploy", result.model_dump(mode="json"))
        self.console.print(
            f"  [green]✓[/green] {target.host} is now the fully deployed standby ({result.release_dir})"
        )

    # --- Output ---

    def _print_stage_start(self, state: RunState) -> None:
        self.console.print(f"\n[bold blue]>>> {STAGE_TITLES.get(state, state.value)}[/bold blue]")

    def _print_summary(self, run: PipelineRun) -> None:
        self.console.print()
        if run.state == RunState.COMPLETE:
            self.console.print("[bold green]Pipeline completed successfully![/bold green]")
        else:
            self.console.print("[bold red]Pipeline failed[/bold red]")
            if run.failure:
                self.console.print(f"[red]{run.failure.stage}: {run.failure.error_type}: {run.failure.message}[/red]")
                if run.failure.output:
                    self.console.print(f"[dim]{run.failure.output.strip()[-2000:]}[/dim]")
        self.console.print()
        self.console.print(f"Run ID: {run.run_id}")
        self.console.print(f"State: {self.config.run_dir / 'state.json'}")
        self.console.print("[bold]Stage Summary:[/bold]")
        for result in run.stages:
            status_color = {
                StageStatus.PASSED: "green",
                StageStatus.FAILED: "red",
                StageStatus.SKIPPED: "yellow",
            }.get(result.status, "white")
            self.console.print(f"  {result.name}: [{status_color}]{result.status.value}[/{status_color}]")
        for warning in run.warnings:
            self.console.print(f"[yellow]warning: {warning}[/yellow]")
