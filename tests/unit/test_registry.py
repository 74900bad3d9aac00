"""Tests for TaskRegistry and the phase state machine."""

from __future__ import annotations

import pytest

from pydantic import ValidationError as PydanticValidationError

from swarmctl.core.result import InvalidTransition, ValidationError
from swarmctl.structures.task import (
    TERMINAL_PHASES,
    IntegrationResult,
    Phase,
    ReviewVerdict,
    Task,
    can_transition,
)
from swarmctl.swarm.registry import TaskRegistry


def _walk_to_review(registry: TaskRegistry, task_id: str) -> None:
    for phase in (Phase.EXPLORING, Phase.PLANNING, Phase.IMPLEMENTING, Phase.REVIEWING):
        registry.transition(task_id, phase)


class TestCreate:
    def test_ids_are_sequential_and_zero_padded(self) -> None:
        registry = TaskRegistry()
        assert registry.create("first") == "task-001"
        assert registry.create("second") == "task-002"
        assert registry.ids() == ["task-001", "task-002"]

    def test_new_task_is_pending_and_unreviewed(self) -> None:
        registry = TaskRegistry()
        task = registry.get(registry.create("  add a cache  "))
        assert task.phase is Phase.PENDING
        assert task.review_verdict is ReviewVerdict.UNREVIEWED
        assert task.integration_result is IntegrationResult.PENDING
        assert task.description == "add a cache"
        assert task.touch_set == frozenset()

    def test_empty_description_is_rejected(self) -> None:
        registry = TaskRegistry()
        with pytest.raises(ValidationError):
            registry.create("   ")
        assert len(registry) == 0

    def test_unknown_task_raises(self) -> None:
        with pytest.raises(ValidationError):
            TaskRegistry().get("task-404")


class TestTransitions:
    def test_happy_path_reaches_merged(self) -> None:
        registry = TaskRegistry()
        task_id = registry.create("work")
        _walk_to_review(registry, task_id)
        registry.transition(task_id, ReviewVerdict.APPROVED)
        task = registry.transition(task_id, IntegrationResult.MERGED)

        assert task.phase is Phase.MERGED
        assert task.review_verdict is ReviewVerdict.APPROVED
        assert task.integration_result is IntegrationResult.MERGED
        assert [r.target for r in registry.history(task_id)] == [
            Phase.EXPLORING,
            Phase.PLANNING,
            Phase.IMPLEMENTING,
            Phase.REVIEWING,
            Phase.APPROVED,
            Phase.MERGED,
        ]

    def test_skipping_a_phase_is_invalid(self) -> None:
        registry = TaskRegistry()
        task_id = registry.create("work")
        with pytest.raises(InvalidTransition) as excinfo:
            registry.transition(task_id, Phase.IMPLEMENTING)
        assert excinfo.value.source == "pending"
        assert registry.get(task_id).phase is Phase.PENDING

    def test_approved_is_only_reachable_through_a_verdict(self) -> None:
        registry = TaskRegistry()
        task_id = registry.create("work")
        _walk_to_review(registry, task_id)
        with pytest.raises(InvalidTransition):
            registry.transition(task_id, Phase.APPROVED)

    def test_merge_requires_approval(self) -> None:
        registry = TaskRegistry()
        task_id = registry.create("work")
        with pytest.raises(InvalidTransition):
            registry.transition(task_id, IntegrationResult.MERGED)

    def test_verdict_outside_review_is_invalid(self) -> None:
        registry = TaskRegistry()
        task_id = registry.create("work")
        registry.transition(task_id, Phase.EXPLORING)
        with pytest.raises(InvalidTransition):
            registry.transition(task_id, ReviewVerdict.APPROVED)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_PHASES, key=lambda p: p.value))
    def test_terminal_phases_have_no_exits(self, terminal: Phase) -> None:
        assert not any(can_transition(terminal, target) for target in Phase)

    def test_terminal_task_rejects_every_update(self) -> None:
        registry = TaskRegistry()
        task_id = registry.create("work")
        registry.transition(task_id, Phase.ABORTED, error="stop")
        with pytest.raises(InvalidTransition):
            registry.transition(task_id, Phase.EXPLORING)
        with pytest.raises(InvalidTransition):
            registry.set_touch_set(task_id, {"a.py"})

    def test_abort_records_integration_result_and_error(self) -> None:
        registry = TaskRegistry()
        task_id = registry.create("work")
        registry.transition(task_id, Phase.EXPLORING)
        task = registry.transition(task_id, Phase.ABORTED, error="cancelled")
        assert task.integration_result is IntegrationResult.ABORTED
        assert task.error == "cancelled"

    def test_changes_requested_loops_back_to_implementing(self) -> None:
        registry = TaskRegistry()
        task_id = registry.create("work")
        _walk_to_review(registry, task_id)
        registry.transition(task_id, ReviewVerdict.CHANGES_REQUESTED)
        task = registry.transition(task_id, Phase.IMPLEMENTING)
        assert task.review_verdict is ReviewVerdict.UNREVIEWED

    def test_blocked_verdict_can_be_reworked(self) -> None:
        registry = TaskRegistry()
        task_id = registry.create("work")
        _walk_to_review(registry, task_id)
        task = registry.transition(task_id, ReviewVerdict.BLOCKED)
        assert task.phase is Phase.BLOCKED
        assert not task.is_terminal
        assert registry.transition(task_id, Phase.IMPLEMENTING).phase is Phase.IMPLEMENTING


class TestDependenciesAndTouchSets:
    def test_dependency_is_mirrored_in_blocks(self) -> None:
        registry = TaskRegistry()
        a = registry.create("a")
        b = registry.create("b")
        registry.add_dependency(b, a)
        assert registry.get(b).depends_on == {a}
        assert registry.get(a).blocks == {b}

    def test_dependency_on_unknown_task_is_rejected(self) -> None:
        registry = TaskRegistry()
        a = registry.create("a")
        with pytest.raises(ValidationError):
            registry.add_dependency(a, "task-999")

    def test_touch_set_is_replaced(self) -> None:
        registry = TaskRegistry()
        task_id = registry.create("a")
        registry.set_touch_set(task_id, {"a.py", "b.py"})
        registry.set_touch_set(task_id, {"c.py"})
        assert registry.get(task_id).touch_set == {"c.py"}


class TestListingAndSnapshots:
    def test_list_filters_by_phase_or_predicate(self) -> None:
        registry = TaskRegistry()
        a = registry.create("a")
        registry.create("b")
        registry.transition(a, Phase.EXPLORING)

        assert [t.id for t in registry.list([Phase.EXPLORING])] == [a]
        assert [t.id for t in registry.list(lambda t: t.phase is Phase.PENDING)] == ["task-002"]
        assert len(registry.list()) == 2

    def test_snapshots_are_immutable(self) -> None:
        registry = TaskRegistry()
        task = registry.get(registry.create("a"))
        with pytest.raises(PydanticValidationError):
            task.phase = Phase.MERGED  # type: ignore[misc]

    def test_listener_sees_every_update(self) -> None:
        seen: list[Task] = []
        registry = TaskRegistry(listener=seen.append)
        task_id = registry.create("a")
        registry.transition(task_id, Phase.EXPLORING)
        assert [t.phase for t in seen] == [Phase.PENDING, Phase.EXPLORING]

    def test_history_is_filtered_per_task(self) -> None:
        registry = TaskRegistry()
        a = registry.create("a")
        b = registry.create("b")
        registry.transition(a, Phase.EXPLORING)
        registry.transition(b, Phase.FAILED, error="boom")
        assert [r.task_id for r in registry.history()] == [a, b]
        assert registry.history(b)[0].detail == "boom"
