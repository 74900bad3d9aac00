"""Tests for the run journal."""

from __future__ import annotations

from pathlib import Path

from swarmctl.core.result import Err, Ok
from swarmctl.structures.task import Phase, Task
from swarmctl.swarm.store import RunState, RunStatus, RunStore
from swarmctl.swarm.types import MergeReport


def _state(run_id: str = "abc12345", **updates: object) -> RunState:
    tasks = [
        Task(id="task-001", description="a"),
        Task(id="task-002", description="b", phase=Phase.MERGED),
    ]
    return RunState(run_id=run_id, tasks=tasks).model_copy(update=updates)


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    store.save(_state())

    loaded = store.load("abc12345")
    assert loaded is not None
    assert loaded.status is RunStatus.RUNNING
    assert [t.phase for t in loaded.tasks] == [Phase.PENDING, Phase.MERGED]
    assert not list(store.root.glob("*.tmp"))


def test_missing_or_corrupt_state_loads_as_none(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    assert store.load("missing") is None

    store.root.mkdir(parents=True)
    (store.root / "broken.json").write_text("{not json", encoding="utf-8")
    assert store.load("broken") is None
    assert store.list_runs() == []


def test_list_runs_oldest_first(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    store.save(_state("second", started_at="2026-01-02T00:00:00+00:00"))
    store.save(_state("first", started_at="2026-01-01T00:00:00+00:00"))
    assert [s.run_id for s in store.list_runs()] == ["first", "second"]


def test_request_cancel_appends_task(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    store.save(_state())

    assert store.request_cancel("abc12345", "task-001") == Ok(None)
    assert store.cancel_requests("abc12345") == {"task-001"}


def test_request_cancel_validates_target(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    store.save(_state())
    store.save(_state("done", report=MergeReport(run_id="done")))

    assert isinstance(store.request_cancel("unknown", "task-001"), Err)
    assert isinstance(store.request_cancel("done", "task-001"), Err)
    assert isinstance(store.request_cancel("abc12345", "task-099"), Err)
    # Terminal tasks cannot be cancelled.
    assert isinstance(store.request_cancel("abc12345", "task-002"), Err)
    assert store.cancel_requests("abc12345") == set()
