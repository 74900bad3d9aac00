from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import get_args

import typer
from rich import box
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .core.config import AppConfig, ConfigLoadResult, TieBreakName, load_config
from .core.console import console, setup_logging
from .core.decorators import handle_exceptions
from .core.result import ConfigurationError, Err, Ok, ValidationError
from .structures.task import Phase, Task
from .swarm.controller import OrchestratorController
from .swarm.store import RunStore
from .swarm.taskfile import RunSpec, load_task_file
from .swarm.types import MergeReport, MergeStatus
from .swarm.workers import CommandPhaseWorker
from .swarm.worktree import GitWorkspaceProvider

app = typer.Typer(help="swarmctl: run many tasks in isolated worktrees and merge them safely.")
logger = logging.getLogger(__name__)

_PHASE_STYLES = {
    Phase.MERGED: "green",
    Phase.APPROVED: "green",
    Phase.FAILED: "red",
    Phase.ABORTED: "yellow",
    Phase.BLOCKED: "yellow",
    Phase.CHANGES_REQUESTED: "yellow",
}

_STATUS_STYLES = {
    MergeStatus.MERGED: "green",
    MergeStatus.CONFLICT: "red",
    MergeStatus.VALIDATION_FAILED: "red",
    MergeStatus.PROVIDER_ERROR: "red",
    MergeStatus.AWAITING_APPROVAL: "yellow",
    MergeStatus.BLOCKED_BY_DEPENDENCY: "yellow",
    MergeStatus.ABORTED: "yellow",
}


@dataclass
class AppState:
    config: AppConfig
    config_meta: ConfigLoadResult
    logger: logging.Logger

    @property
    def store(self) -> RunStore:
        return RunStore(self.config.orchestrator.state_dir)


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Path to a swarmctl config file (TOML or JSON)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    loaded_config, meta = load_config(config_path=config)
    logger = setup_logging(level=loaded_config.user.log_level, verbose=verbose)

    ctx.obj = AppState(config=loaded_config, config_meta=meta, logger=logger)

    if meta.error:
        console.print(
            Panel(
                f"[bold red]Configuration Error - Safe Mode Active[/bold red]\n\n"
                f"Failed to load {meta.path}:\n{meta.error}\n\n"
                f"[yellow]Using default settings.[/yellow]",
                border_style="red",
            )
        )
    else:
        logger.debug(
            "Loaded configuration from %s (env overrides: %s)",
            meta.path,
            sorted(meta.env_overrides),
        )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _styled(value: str, style: str | None) -> str:
    return f"[{style}]{value}[/{style}]" if style else value


def _render_tasks(tasks: list[Task], title: str) -> None:
    table = Table(title=title, box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Phase", no_wrap=True)
    table.add_column("Verdict", no_wrap=True)
    table.add_column("Touch-set")
    table.add_column("Description")

    for task in tasks:
        table.add_row(
            task.id,
            _styled(task.phase.value, _PHASE_STYLES.get(task.phase)),
            task.review_verdict.value,
            ", ".join(sorted(task.touch_set)) or "-",
            escape(task.description),
        )

    console.print(table)


def _render_report(report: MergeReport) -> None:
    table = Table(title=f"Run {report.run_id}", box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Final phase", no_wrap=True)
    table.add_column("Merge", no_wrap=True)
    table.add_column("Detail")

    for outcome in report.outcomes:
        merge = outcome.merge_status
        merge_text = _styled(merge.value, _STATUS_STYLES.get(merge)) if merge else "-"
        detail = outcome.error or ""
        if outcome.skipped_by_dependency:
            detail = f"skipped (dependency): {detail}"
        table.add_row(
            outcome.task_id,
            _styled(outcome.phase.value, _PHASE_STYLES.get(outcome.phase)),
            merge_text,
            escape(detail),
        )

    console.print(table)

    lines = [
        f"Merge order: {' -> '.join(report.order) or '(none)'}",
        f"Merged: {len(report.merged)}/{len(report.outcomes)}",
    ]
    if report.cycle:
        lines.append(f"[red]Dependency cycle: {', '.join(report.cycle)}[/red]")
    if report.error:
        lines.append(f"[red]Run error: {escape(report.error)}[/red]")
    console.print(Panel("\n".join(lines), title="Summary", box=box.SIMPLE))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _execute_run(config: AppConfig, repo: Path, run_spec: RunSpec) -> MergeReport:
    provider = (await GitWorkspaceProvider.open(repo, config.workspace)).unwrap()
    controller = OrchestratorController(
        config,
        provider,
        CommandPhaseWorker(config.phases),
        store=RunStore(config.orchestrator.state_dir),
    )
    run_id = (
        await controller.submit(
            run_spec.descriptions, run_spec.dependencies, priorities=run_spec.priorities
        )
    ).unwrap()
    console.print(f"Run [cyan]{run_id}[/cyan] started with {len(run_spec.descriptions)} tasks")
    return (await controller.wait(run_id)).unwrap()


@app.command("run")
@handle_exceptions
def run_tasks(
    ctx: typer.Context,
    tasks_file: Path = typer.Argument(..., help="TOML or JSON file listing the tasks."),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Git repository to work in."),
    max_parallel: int | None = typer.Option(
        None, "--max-parallel", "-j", min=1, help="Tasks advancing concurrently."
    ),
    tie_break: str | None = typer.Option(
        None,
        "--tie-break",
        help="declaration, lexicographic, priority or touch-set-size.",
    ),
    validate: str | None = typer.Option(
        None, "--validate", help="Command validating the baseline after each merge."
    ),
) -> None:
    """Run every task of TASKS_FILE and merge the results."""
    state: AppState = ctx.obj
    config = _with_overrides(state.config, max_parallel, tie_break, validate)
    run_spec = load_task_file(tasks_file)

    report = asyncio.run(_execute_run(config, repo.expanduser(), run_spec))
    _render_report(report)
    if report.error:
        raise typer.Exit(code=1)


def _with_overrides(
    config: AppConfig,
    max_parallel: int | None,
    tie_break: str | None,
    validate: str | None,
) -> AppConfig:
    orchestrator = config.orchestrator
    workspace = config.workspace
    if max_parallel is not None:
        orchestrator = orchestrator.model_copy(update={"max_parallel": max_parallel})
    if tie_break is not None:
        if tie_break not in get_args(TieBreakName):
            raise ConfigurationError(f"Unknown tie-break: {tie_break}")
        orchestrator = orchestrator.model_copy(update={"tie_break": tie_break})
    if validate is not None:
        workspace = workspace.model_copy(update={"validate_command": validate})
    return config.model_copy(update={"orchestrator": orchestrator, "workspace": workspace})


@app.command("status")
@handle_exceptions
def show_status(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Run identifier."),
) -> None:
    """Show every task of a run."""
    state: AppState = ctx.obj
    run = state.store.load(run_id)
    if run is None:
        raise ValidationError(f"Unknown run: {run_id}")
    _render_tasks(run.tasks, title=f"Run {run_id} ({run.status.value})")
    if run.plan is not None:
        frozen = " (frozen)" if run.plan.frozen else ""
        console.print(f"Merge plan{frozen}: {' -> '.join(run.plan.order) or '(none)'}")


@app.command("cancel")
@handle_exceptions
def cancel_task(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Run identifier."),
    task_id: str = typer.Argument(..., help="Task to cancel (e.g. task-002)."),
) -> None:
    """Ask a running run to abort one task at its next phase boundary."""
    state: AppState = ctx.obj
    match state.store.request_cancel(run_id, task_id):
        case Ok(_):
            console.print(f"[yellow]Cancellation of {task_id} requested[/yellow]")
        case Err(err):
            raise err


@app.command("result")
@handle_exceptions
def show_result(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Run identifier."),
) -> None:
    """Show the final report of a finished run."""
    state: AppState = ctx.obj
    run = state.store.load(run_id)
    if run is None:
        raise ValidationError(f"Unknown run: {run_id}")
    if run.report is None:
        console.print(f"[yellow]Run {run_id} is still in progress[/yellow]")
        raise typer.Exit(code=1)
    _render_report(run.report)


@app.command("runs")
def list_runs(ctx: typer.Context) -> None:
    """List recorded runs."""
    state: AppState = ctx.obj
    table = Table(title="Runs", box=box.SIMPLE, expand=True)
    table.add_column("Run", style="cyan", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Started", no_wrap=True)
    table.add_column("Tasks", justify="right")
    table.add_column("Merged", justify="right")

    for run in state.store.list_runs():
        merged = sum(1 for task in run.tasks if task.phase is Phase.MERGED)
        table.add_row(
            run.run_id,
            run.status.value,
            run.started_at[:19],
            str(len(run.tasks)),
            str(merged),
        )

    console.print(table)


@app.command("config")
def show_config(ctx: typer.Context) -> None:
    """Show the active configuration and where it came from."""
    state: AppState = ctx.obj
    config = state.config
    meta = state.config_meta

    table = Table(title="Config", box=box.SIMPLE, expand=True)
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")

    for group, values in config.model_dump().items():
        for key, value in values.items():
            table.add_row(f"{group}.{key}", str(value))

    console.print(table)

    meta_lines = [
        f"Path: {meta.path}",
        "File loaded: yes" if meta.file_loaded else "File loaded: no (using defaults + env)",
    ]

    if meta.env_overrides:
        meta_lines.append("Env overrides: " + ", ".join(sorted(meta.env_overrides)))

    console.print(Panel("\n".join(meta_lines), title="Config source", box=box.SIMPLE))


@app.command("version")
def show_version() -> None:
    """Print the swarmctl version."""
    console.print(__version__)


def cli() -> None:
    app()


if __name__ == "__main__":
    cli()
