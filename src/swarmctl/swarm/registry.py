"""Authoritative store of task records and their transitions.

Every change to a task goes through ``TaskRegistry``. Reads hand out
immutable ``Task`` snapshots; writes replace a single record atomically, so
the scheduler (phase, touch-set, verdict) and the sequencer (integration
result) never need a cross-component lock.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable
from datetime import UTC, datetime

from swarmctl.core.result import InvalidTransition, ValidationError
from swarmctl.structures.task import (
    INTEGRATION_PHASES,
    VERDICT_PHASES,
    IntegrationResult,
    Phase,
    ReviewVerdict,
    Task,
    TransitionRecord,
    can_transition,
)

logger = logging.getLogger(__name__)

TaskListener = Callable[[Task], None]
TaskFilter = Callable[[Task], bool] | Collection[Phase] | None

_RESULT_ONLY_PHASES = frozenset({Phase.APPROVED, Phase.CHANGES_REQUESTED, Phase.MERGED})


class TaskRegistry:
    """Holds every task of a run and validates each transition.

    Tasks are never deleted; terminated tasks stay in the registry as the
    run's audit trail, together with the ordered transition history.
    """

    def __init__(self, *, id_prefix: str = "task", listener: TaskListener | None = None) -> None:
        self._id_prefix = id_prefix
        self._tasks: dict[str, Task] = {}
        self._history: list[TransitionRecord] = []
        self._listener = listener

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def set_listener(self, listener: TaskListener | None) -> None:
        """Install a callback invoked with every new snapshot."""
        self._listener = listener

    def create(self, description: str, *, priority: int = 0) -> str:
        """Register a new pending task and return its id."""
        if not description.strip():
            raise ValidationError("Task description must not be empty")
        task_id = f"{self._id_prefix}-{len(self._tasks) + 1:03d}"
        task = Task(id=task_id, description=description.strip(), priority=priority)
        self._tasks[task_id] = task
        logger.debug("Created %s: %s", task_id, task.description[:60])
        self._notify(task)
        return task_id

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise ValidationError(f"Unknown task: {task_id}", context={"task_id": task_id}) from None

    def list(self, task_filter: TaskFilter = None) -> list[Task]:
        """Return snapshots in creation order.

        Args:
            task_filter: A predicate, a collection of phases, or None for all
        """
        tasks: Iterable[Task] = self._tasks.values()
        if task_filter is None:
            return list(tasks)
        if callable(task_filter):
            return [t for t in tasks if task_filter(t)]
        phases = frozenset(task_filter)
        return [t for t in tasks if t.phase in phases]

    def ids(self) -> list[str]:
        return list(self._tasks)

    def history(self, task_id: str | None = None) -> list[TransitionRecord]:
        if task_id is None:
            return list(self._history)
        return [r for r in self._history if r.task_id == task_id]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_dependency(self, task_id: str, depends_on: str) -> Task:
        """Record that ``task_id`` must integrate after ``depends_on``.

        Self-dependencies are accepted here and reported later as a cycle.
        """
        task = self.get(task_id)
        dependency = self.get(depends_on)
        updated = task.model_copy(update={"depends_on": task.depends_on | {depends_on}})
        self._tasks[task_id] = updated
        if depends_on == task_id:
            updated = updated.model_copy(update={"blocks": updated.blocks | {task_id}})
            self._tasks[task_id] = updated
        else:
            self._tasks[depends_on] = dependency.model_copy(
                update={"blocks": dependency.blocks | {task_id}}
            )
        self._notify(updated)
        return updated

    def set_touch_set(self, task_id: str, resources: Iterable[str]) -> Task:
        """Replace the task's touch-set with a refined estimate."""
        task = self.get(task_id)
        if task.is_terminal:
            raise InvalidTransition(task_id, task.phase.value, "touch-set update")
        updated = task.model_copy(update={"touch_set": frozenset(resources)})
        self._tasks[task_id] = updated
        self._notify(updated)
        return updated

    def record_rework(self, task_id: str) -> Task:
        task = self.get(task_id)
        updated = task.model_copy(update={"rework_count": task.rework_count + 1})
        self._tasks[task_id] = updated
        return updated

    def transition(
        self,
        task_id: str,
        target: Phase | ReviewVerdict | IntegrationResult,
        *,
        error: str | None = None,
    ) -> Task:
        """Move a task to a new phase, verdict or integration result.

        Raises:
            InvalidTransition: If the state machine forbids the move
        """
        task = self.get(task_id)
        update: dict[str, object] = {}

        match target:
            case Phase():
                next_phase = target
                if target in _RESULT_ONLY_PHASES or (
                    target is Phase.BLOCKED and task.phase is Phase.REVIEWING
                ):
                    # Verdict and merge phases are only reachable via their results.
                    raise InvalidTransition(task_id, task.phase.value, target.value)
                if target is Phase.ABORTED:
                    update["integration_result"] = IntegrationResult.ABORTED
                elif target is Phase.FAILED:
                    update["integration_result"] = IntegrationResult.FAILED
                elif target is Phase.IMPLEMENTING:
                    update["review_verdict"] = ReviewVerdict.UNREVIEWED
            case ReviewVerdict():
                if target is ReviewVerdict.UNREVIEWED or task.phase is not Phase.REVIEWING:
                    raise InvalidTransition(task_id, task.phase.value, f"verdict:{target.value}")
                next_phase = VERDICT_PHASES[target]
                update["review_verdict"] = target
            case IntegrationResult():
                if target is IntegrationResult.PENDING:
                    raise InvalidTransition(task_id, task.phase.value, "integration:pending")
                if target is IntegrationResult.MERGED and (
                    task.review_verdict is not ReviewVerdict.APPROVED
                ):
                    raise InvalidTransition(task_id, task.phase.value, "integration:merged")
                next_phase = INTEGRATION_PHASES[target]
                update["integration_result"] = target

        if not can_transition(task.phase, next_phase):
            raise InvalidTransition(task_id, task.phase.value, next_phase.value)

        update["phase"] = next_phase
        if error is not None:
            update["error"] = error
        updated = task.model_copy(update=update)
        self._tasks[task_id] = updated
        self._history.append(
            TransitionRecord(
                task_id=task_id,
                source=task.phase,
                target=next_phase,
                timestamp=datetime.now(UTC),
                detail=error,
            )
        )
        logger.debug("%s: %s -> %s", task_id, task.phase.value, next_phase.value)
        self._notify(updated)
        return updated

    def _notify(self, task: Task) -> None:
        if self._listener is not None:
            self._listener(task)


__all__ = ["TaskFilter", "TaskListener", "TaskRegistry"]
