"""End-to-end orchestration runs on real git repositories."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner

from swarmctl.core.config import AppConfig, RetryConfig, WorkspaceConfig
from swarmctl.main import app
from swarmctl.structures.task import Phase, Task
from swarmctl.swarm import GitWorkspaceProvider, MergeStatus, OrchestratorController
from swarmctl.swarm.types import PhaseOutcome, WorkspaceHandle


class FileWorker:
    """Writes one file per task during implementing."""

    def __init__(self, files: dict[str, tuple[str, str]]) -> None:
        self.files = files

    async def run(self, phase: Phase, task: Task, handle: WorkspaceHandle) -> PhaseOutcome:
        if phase is Phase.IMPLEMENTING and task.id in self.files:
            name, content = self.files[task.id]
            (handle.path / name).write_text(content)
        return PhaseOutcome.success()


def _log(repo: Path) -> list[str]:
    output = subprocess.run(
        ["git", "log", "--format=%s", "main"], cwd=repo, check=True, capture_output=True, text=True
    ).stdout
    return output.splitlines()


@pytest.mark.asyncio
async def test_conflicting_tasks_are_sequenced(git_repo: Path, tmp_path: Path) -> None:
    config = AppConfig(
        workspace=WorkspaceConfig(worktree_root=tmp_path / "trees"),
        retry=RetryConfig(attempts=1),
    )
    provider = (await GitWorkspaceProvider.open(git_repo, config.workspace)).unwrap()
    worker = FileWorker(
        {
            "task-001": ("shared.txt", "from A\n"),
            "task-002": ("shared.txt", "from B\n"),
            "task-003": ("other.txt", "from C\n"),
        }
    )
    controller = OrchestratorController(config, provider, worker)

    run_id = (await controller.submit(["A", "B", "C"])).unwrap()
    report = (await controller.wait(run_id)).unwrap()

    assert report.order == ["task-001", "task-002", "task-003"]
    assert report.merged == ["task-001", "task-003"]
    assert report.entry("task-002").status is MergeStatus.CONFLICT  # type: ignore[union-attr]
    assert (git_repo / "shared.txt").read_text() == "from A\n"
    assert (git_repo / "other.txt").read_text() == "from C\n"
    merges = [line for line in _log(git_repo) if line.startswith("Merge ")]
    assert [m.split()[1] for m in merges] == ["task-003", "task-001"]
    assert provider.active == {}


def test_cli_run_with_phase_commands(
    runner: CliRunner,
    capture_console: Console,
    git_repo: Path,
    tmp_path: Path,
    isolate_config: Path,
) -> None:
    isolate_config.write_text(
        f"""
[orchestrator]
state_dir = "{tmp_path / 'state'}"

[workspace]
worktree_root = "{tmp_path / 'trees'}"

[phases]
implement = "sh -c 'echo \\"$SWARMCTL_TASK_ID\\" > \\"$SWARMCTL_TASK_ID.txt\\"'"
""",
        encoding="utf-8",
    )
    tasks = tmp_path / "tasks.toml"
    tasks.write_text(
        '[[tasks]]\ndescription = "first"\n\n[[tasks]]\ndescription = "second"\n',
        encoding="utf-8",
    )

    result = runner.invoke(app, ["run", str(tasks), "--repo", str(git_repo)])

    assert result.exit_code == 0, capture_console.export_text()
    assert (git_repo / "task-001.txt").read_text().strip() == "task-001"
    assert (git_repo / "task-002.txt").read_text().strip() == "task-002"
    assert "Merged: 2/2" in capture_console.export_text()

    runs = list((tmp_path / "state" / "runs").glob("*.json"))
    assert len(runs) == 1
