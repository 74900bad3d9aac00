"""Persisted run state.

Each run is journaled to ``<state_dir>/runs/<run_id>.json`` after every task
update, so ``swarmctl status`` and ``swarmctl result`` work from another
process and an interrupted run can be inspected afterwards. Cancellation
requests from other processes are appended to ``<run_id>.cancel``, one task
id per line.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from swarmctl.core.result import Err, Ok, Result, ValidationError
from swarmctl.structures.task import Task, TransitionRecord
from swarmctl.swarm.types import MergePlan, MergeReport

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunState(BaseModel):
    """Journal entry for one orchestration run.

    Attributes:
        run_id: Unique identifier for this run
        status: Whether the run is still in progress
        started_at: ISO timestamp when the run began
        finished_at: ISO timestamp when the run became quiescent
        tasks: Latest snapshot of every task
        history: Ordered transition audit trail
        plan: Latest computed merge plan
        report: Final report once the run is quiescent
    """

    run_id: str
    status: RunStatus = RunStatus.RUNNING
    started_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    finished_at: str | None = None
    tasks: list[Task] = Field(default_factory=list)
    history: list[TransitionRecord] = Field(default_factory=list)
    plan: MergePlan | None = None
    report: MergeReport | None = None


class RunStore:
    """Reads and writes run journals under a state directory."""

    def __init__(self, state_dir: Path) -> None:
        self._root = state_dir.expanduser() / "runs"

    @property
    def root(self) -> Path:
        return self._root

    def _state_path(self, run_id: str) -> Path:
        return self._root / f"{run_id}.json"

    def _cancel_path(self, run_id: str) -> Path:
        return self._root / f"{run_id}.cancel"

    def save(self, state: RunState) -> None:
        """Write the journal atomically (temp file + rename)."""
        self._root.mkdir(parents=True, exist_ok=True)
        path = self._state_path(state.run_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(state.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, path)

    async def write(self, state: RunState) -> None:
        """``save`` on a worker thread, keeping the event loop free."""
        await asyncio.to_thread(self.save, state)

    def load(self, run_id: str) -> RunState | None:
        """Load a journal; returns None when missing or unreadable."""
        path = self._state_path(run_id)
        if not path.exists():
            return None
        try:
            return RunState.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, PydanticValidationError) as exc:
            logger.warning("Ignoring unreadable run state %s: %s", path, exc)
            return None

    def list_runs(self) -> list[RunState]:
        """All readable journals, oldest first."""
        if not self._root.exists():
            return []
        states = [self.load(path.stem) for path in self._root.glob("*.json")]
        return sorted((s for s in states if s is not None), key=lambda s: s.started_at)

    def request_cancel(self, run_id: str, task_id: str) -> Result[None, ValidationError]:
        """Ask the process owning ``run_id`` to abort ``task_id``."""
        state = self.load(run_id)
        if state is None:
            return Err(ValidationError(f"Unknown run: {run_id}"))
        if state.report is not None:
            return Err(ValidationError(f"Run {run_id} has already finished"))
        task = next((t for t in state.tasks if t.id == task_id), None)
        if task is None:
            return Err(ValidationError(f"Unknown task: {task_id}", context={"run_id": run_id}))
        if task.is_terminal:
            return Err(ValidationError(f"{task_id} is already {task.phase.value}"))

        with self._cancel_path(run_id).open("a", encoding="utf-8") as handle:
            handle.write(f"{task_id}\n")
        return Ok(None)

    def cancel_requests(self, run_id: str) -> set[str]:
        path = self._cancel_path(run_id)
        if not path.exists():
            return set()
        return {line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip()}


__all__ = ["RunState", "RunStatus", "RunStore"]
