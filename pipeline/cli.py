"""CLI entrypoint for shipline."""

import logging
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from orchestrator import ConsoleApprovalChannel, FileApprovalChannel, PipelineOrchestrator, StateMachine
from orchestrator.checkpoints import submit_decision
from pipeline import __version__
from pipeline.config import Config, load_config
from schemas.approval import Decision
from schemas.pipeline_state import RunState
from tools.deploy import DeploymentExecutor
from tools.errors import PipelineError
from tools.release_ledger import ReleaseLedger

app = typer.Typer(
    name="shipline",
    help="Build, verify and promote web application releases.",
    add_completion=False,
)
console = Console()

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to shipline.toml (default: search current and parent directories)",
)

STATE_STYLES = {
    "complete": "green",
    "failed": "red",
    "awaiting_approval": "yellow",
    "init": "dim",
}

STATUS_STYLES = {
    "passed": "green",
    "failed": "red",
    "timed_out": "red",
    "running": "blue",
    "skipped": "dim",
    "pending": "white",
}


def _load(config_path: Optional[Path]) -> Config:
    try:
        cfg = load_config(config_path)
    except PipelineError as e:
        rprint(f"[red]Configuration error: {e.message}[/red]")
        raise typer.Exit(1)
    _setup_logging(cfg.pipeline.log_level)
    return cfg


def _setup_logging(level: str) -> None:
    root = logging.getLogger()
    if any(isinstance(h, RichHandler) for h in root.handlers):
        root.setLevel(level.upper())
        return
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _run_dir(cfg: Config, run_id: str) -> Path:
    run_dir = cfg.runs_dir / run_id
    if not run_dir.exists():
        rprint(f"[red]Run not found: {run_id}[/red]")
        raise typer.Exit(1)
    return run_dir


@app.command()
def run(
    run_number: int = typer.Argument(..., help="Number of the triggering event (one run per number)"),
    config_path: Optional[Path] = ConfigOption,
    interactive: bool = typer.Option(
        True,
        "--interactive/--no-interactive",
        help="Also prompt for approval in this terminal",
    ),
) -> None:
    """Execute a full pipeline run.

    Examples:
        shipline run 42
        shipline run 43 --config ci/shipline.toml --no-interactive
    """
    cfg = _load(config_path)
    try:
        run_config = cfg.for_run(run_number)
    except PipelineError as e:
        rprint(f"[red]Configuration error: {e.message}[/red]")
        raise typer.Exit(1)

    rprint(f"[bold blue]shipline v{__version__}[/bold blue]")
    rprint(f"[green]Project:[/green] {run_config.project}")
    rprint(f"[green]Workspace:[/green] {run_config.workspace}")
    rprint()

    channels = [FileApprovalChannel(run_config.run_dir, poll_interval=run_config.approval_poll_interval)]
    if interactive:
        channels.append(ConsoleApprovalChannel(console))

    orchestrator = PipelineOrchestrator(run_config, console=console, channels=channels)
    try:
        result = orchestrator.run()
    except PipelineError as e:
        rprint(f"[red]Error: {e.message}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        rprint("\n[yellow]Interrupted[/yellow]")
        raise typer.Exit(130)

    if result.state != RunState.COMPLETE:
        raise typer.Exit(1)


def _decide(run_id: str, decision: Decision, actor: str, notes: Optional[str], config_path: Optional[Path]) -> None:
    cfg = _load(config_path)
    run_dir = _run_dir(cfg, run_id)
    try:
        submit_decision(run_dir, decision, actor, notes)
    except PipelineError as e:
        rprint(f"[red]{e.message}[/red]")
        raise typer.Exit(1)
    verb = "Approved" if decision == Decision.APPROVE else "Rejected"
    rprint(f"[green]{verb} {run_id} as {actor}.[/green] [dim]The waiting run picks this up on its next poll.[/dim]")


@app.command()
def approve(
    run_id: str = typer.Argument(..., help="Run awaiting approval"),
    actor: str = typer.Option(..., "--actor", "-a", help="Your approver identity"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n", help="Optional notes"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Approve production promotion of a waiting run."""
    _decide(run_id, Decision.APPROVE, actor, notes, config_path)


@app.command()
def reject(
    run_id: str = typer.Argument(..., help="Run awaiting approval"),
    actor: str = typer.Option(..., "--actor", "-a", help="Your approver identity"),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the release is rejected"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Reject production promotion of a waiting run."""
    _decide(run_id, Decision.REJECT, actor, reason, config_path)


@app.command()
def runs(config_path: Optional[Path] = ConfigOption) -> None:
    """List all pipeline runs."""
    cfg = _load(config_path)
    runs_dir = cfg.runs_dir
    run_dirs = sorted(
        (p for p in runs_dir.iterdir() if (p / "state.json").exists()),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    ) if runs_dir.exists() else []

    if not run_dirs:
        rprint("[dim]No runs found.[/dim]")
        return

    table = Table(title="Pipeline Runs")
    table.add_column("Run ID", style="cyan")
    table.add_column("State", style="green")
    table.add_column("Artifact", style="white")
    table.add_column("Started", style="dim")

    for run_dir in run_dirs:
        try:
            r = StateMachine.load_state(run_dir).run
        except (OSError, ValueError) as e:
            table.add_row(run_dir.name, f"[red]unreadable: {e}[/red]", "", "")
            continue
        style = STATE_STYLES.get(r.state.value, "blue")
        table.add_row(
            r.run_id,
            f"[{style}]{r.state.value}[/{style}]",
            r.artifact_id or "",
            r.started_at.isoformat(timespec="seconds"),
        )

    console.print(table)


@app.command()
def show(
    run_id: str = typer.Argument(..., help="Run ID to show details for"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Show details of a specific run."""
    cfg = _load(config_path)
    run_dir = _run_dir(cfg, run_id)
    try:
        state_machine = StateMachine.load_state(run_dir)
    except (OSError, ValueError) as e:
        rprint(f"[red]Cannot read state for {run_id}: {e}[/red]")
        raise typer.Exit(1)
    r = state_machine.run
    summary = state_machine.get_progress_summary()

    style = STATE_STYLES.get(r.state.value, "blue")
    rprint(f"[bold]Run: {r.run_id}[/bold]")
    rprint()
    rprint(f"[green]State:[/green] [{style}]{r.state.value}[/{style}] ({summary['progress']} stages)")
    if r.artifact_id:
        rprint(f"[green]Artifact:[/green] {r.artifact_id}")
    if r.approval:
        resolved = f" by {r.approval.resolved_by}" if r.approval.resolved_by else ""
        rprint(f"[green]Approval:[/green] {r.approval.status.value}{resolved}")
    if r.standby_host:
        rprint(f"[green]Standby:[/green] {r.standby_host}")
    if r.failure:
        rprint(f"[red]Failure:[/red] {r.failure.stage}: {r.failure.error_type}: {r.failure.message}")
    rprint()

    table = Table(title="Stages")
    table.add_column("Stage", style="cyan")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Exit", justify="right")
    table.add_column("Duration", justify="right")

    for stage in r.stages:
        style = STATUS_STYLES.get(stage.status.value, "white")
        duration = f"{stage.duration_seconds:.1f}s" if stage.duration_seconds is not None else ""
        table.add_row(stage.name, "", f"[{style}]{stage.status.value}[/{style}]", "", duration)
        for step in stage.steps:
            style = STATUS_STYLES.get(step.status.value, "white")
            table.add_row(
                "",
                step.name,
                f"[{style}]{step.status.value}[/{style}]",
                "" if step.exit_code is None else str(step.exit_code),
                f"{step.duration:.1f}s",
            )

    console.print(table)
    for warning in r.warnings:
        rprint(f"[yellow]warning: {warning}[/yellow]")


@app.command()
def standby(config_path: Optional[Path] = ConfigOption) -> None:
    """Show which production host holds the fully deployed standby release."""
    cfg = _load(config_path)
    record = ReleaseLedger(cfg.runs_dir / "deployments.json").standby()
    if record is None:
        rprint("[dim]No standby release recorded.[/dim]")
        return

    table = Table(title="Production Standby")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("target", record.target)
    table.add_row("host", record.host)
    table.add_row("release_dir", record.release_dir)
    table.add_row("artifact_id", record.artifact_id)
    table.add_row("run_id", record.run_id)
    table.add_row("approved_by", record.approved_by or "")
    table.add_row("deployed_at", record.deployed_at.isoformat(timespec="seconds"))
    console.print(table)


@app.command()
def rollback(
    target_name: str = typer.Argument(..., help="Target whose current symlink to move"),
    to: Optional[str] = typer.Option(
        None,
        "--to",
        "-t",
        help="Release directory or name (default: previous successful release)",
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Repoint a target at an earlier release.

    Examples:
        shipline rollback staging --to release-41
        shipline rollback web-b
    """
    cfg = _load(config_path)
    try:
        targets = {t.name: t for t in cfg.build_targets()}
    except PipelineError as e:
        rprint(f"[red]Configuration error: {e.message}[/red]")
        raise typer.Exit(1)
    target = targets.get(target_name)
    if target is None:
        rprint(f"[red]Unknown target: {target_name}[/red]")
        raise typer.Exit(1)

    ledger = ReleaseLedger(cfg.runs_dir / "deployments.json")
    release = to or ledger.previous_release(target.name)
    if release is None:
        rprint(f"[red]No previous release recorded for {target_name}; pass --to[/red]")
        raise typer.Exit(1)

    try:
        result = DeploymentExecutor(ledger=ledger).rollback(target, release)
    except PipelineError as e:
        rprint(f"[red]Rollback failed: {e.message}[/red]")
        if e.output:
            rprint(f"[dim]{e.output.strip()[-1000:]}[/dim]")
        raise typer.Exit(1)
    rprint(f"[green]{target.current_path} -> {result.release_dir}[/green]")


@app.command()
def version() -> None:
    """Show version information."""
    rprint(f"[bold blue]shipline[/bold blue] v{__version__}")


@app.command("config-show")
def config_show(config_path: Optional[Path] = ConfigOption) -> None:
    """Show current configuration."""
    cfg = _load(config_path)

    table = Table(title="Current Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("project.name", cfg.project.name)
    table.add_row("project.workspace", str(cfg.workspace))
    table.add_row("pipeline.runs_dir", str(cfg.runs_dir))
    table.add_row("pipeline.log_level", cfg.pipeline.log_level)
    table.add_row("database.host", f"{cfg.database.host}:{cfg.database.port}")
    table.add_row("database.name", cfg.database.name)
    table.add_row("build_test.steps", ", ".join(s.get("name", "?") for s in cfg.build_test.steps))
    table.add_row("quality_gates.steps", ", ".join(s.get("name", "?") for s in cfg.quality_gates.steps))
    table.add_row("artifact.store_dir", str(cfg.resolve(cfg.artifact.store_dir)))
    table.add_row("approval.approvers", ", ".join(cfg.approval.approvers) or "anyone")
    table.add_row("approval.timeout_hours", str(cfg.approval.timeout_hours))
    for name, target in cfg.targets.items():
        table.add_row(f"targets.{name}", f"{target.get('role', '?')} @ {target.get('host', '?')}")

    console.print(table)


if __name__ == "__main__":
    app()
