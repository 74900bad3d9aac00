"""Data types exchanged between the orchestration components."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from swarmctl.structures.task import IntegrationResult, Phase, ReviewVerdict


class WorkspaceHandle(BaseModel):
    """An isolated working copy bound to exactly one task.

    Attributes:
        task_id: Owning task
        path: Filesystem location of the working copy
        branch: Branch the task's changes live on
        base_commit: Baseline commit the workspace was created from
    """

    model_config = ConfigDict(frozen=True)

    task_id: str
    path: Path
    branch: str
    base_commit: str = ""


@dataclass(frozen=True)
class PhaseOutcome:
    """What a phase worker reports back for one phase.

    Attributes:
        ok: Whether the phase completed
        touch_set: Resources the task will touch (planning) or touched (implementing)
        verdict: Review verdict (reviewing only)
        detail: Failure detail or free-form note
    """

    ok: bool
    touch_set: frozenset[str] | None = None
    verdict: ReviewVerdict | None = None
    detail: str | None = None

    @classmethod
    def success(
        cls,
        *,
        touch_set: frozenset[str] | set[str] | None = None,
        verdict: ReviewVerdict | None = None,
        detail: str | None = None,
    ) -> PhaseOutcome:
        resources = frozenset(touch_set) if touch_set is not None else None
        return cls(ok=True, touch_set=resources, verdict=verdict, detail=detail)

    @classmethod
    def failure(cls, detail: str) -> PhaseOutcome:
        return cls(ok=False, detail=detail)


@dataclass(frozen=True)
class MergeOutcome:
    """Result of integrating one workspace into the baseline.

    Attributes:
        merged: Whether the baseline now contains the task's changes
        commit: Baseline head after the merge
        previous_head: Baseline head before the merge, used to revert
        conflicts: Conflicting resources when the merge was refused
        detail: Provider message
    """

    merged: bool
    commit: str | None = None
    previous_head: str | None = None
    conflicts: tuple[str, ...] = ()
    detail: str | None = None


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of validating the baseline after a merge."""

    passed: bool
    detail: str | None = None


@dataclass
class PhaseResult:
    """Where ``PhaseScheduler.advance`` left a task.

    Attributes:
        task_id: The advanced task
        phase: Phase the task ended in
        ok: False when the task failed, was aborted or was blocked
        error: Originating error for non-ok results
    """

    task_id: str
    phase: Phase
    ok: bool
    error: str | None = None


class ConflictEdge(BaseModel):
    """Undirected conflict between two tasks with intersecting touch-sets."""

    model_config = ConfigDict(frozen=True)

    first: str
    second: str
    resources: frozenset[str] = Field(default_factory=frozenset)


class MergePlan(BaseModel):
    """Total integration order plus the edges it was derived from.

    Attributes:
        order: Task ids in the order they are integrated
        explicit: task id -> explicit dependencies that precede it
        conflicts: task id -> conflicting tasks ordered before it
        frozen: Set once the merge sequencer starts consuming the plan
    """

    model_config = ConfigDict(frozen=True)

    order: tuple[str, ...] = ()
    explicit: dict[str, frozenset[str]] = Field(default_factory=dict)
    conflicts: dict[str, frozenset[str]] = Field(default_factory=dict)
    frozen: bool = False

    def predecessors(self, task_id: str) -> frozenset[str]:
        """All tasks that must reach a merge outcome before ``task_id``."""
        return self.explicit.get(task_id, frozenset()) | self.conflicts.get(task_id, frozenset())

    def position(self, task_id: str) -> int:
        return self.order.index(task_id)

    def freeze(self) -> MergePlan:
        return self if self.frozen else self.model_copy(update={"frozen": True})


class MergeStatus(str, Enum):
    """Per-task outcome of a merge sequencer pass."""

    MERGED = "merged"
    CONFLICT = "conflict"
    VALIDATION_FAILED = "validation-failed"
    PROVIDER_ERROR = "provider-error"
    AWAITING_APPROVAL = "awaiting-approval"
    BLOCKED_BY_DEPENDENCY = "blocked-by-dependency"
    ABORTED = "aborted"


class MergeEntry(BaseModel):
    """One task's line in a merge report."""

    task_id: str
    status: MergeStatus
    detail: str | None = None
    commit: str | None = None
    blocked_by: list[str] = Field(default_factory=list)


class TaskOutcome(BaseModel):
    """Final state of a task at the end of a run.

    ``skipped_by_dependency`` separates tasks held back because something
    they depend on did not merge from tasks that failed on their own.
    """

    task_id: str
    description: str
    phase: Phase
    review_verdict: ReviewVerdict
    integration_result: IntegrationResult
    merge_status: MergeStatus | None = None
    error: str | None = None
    skipped_by_dependency: bool = False


class MergeReport(BaseModel):
    """Aggregate result of a run.

    Attributes:
        run_id: Owning run
        order: Frozen merge plan order
        entries: Merge sequencer outcome per planned task
        outcomes: Final state of every task in the run
        cycle: Members of a dependency cycle that stopped the run
        error: Run-level failure (cycle or invalid transition)
    """

    run_id: str = ""
    order: list[str] = Field(default_factory=list)
    entries: list[MergeEntry] = Field(default_factory=list)
    outcomes: list[TaskOutcome] = Field(default_factory=list)
    cycle: list[str] = Field(default_factory=list)
    error: str | None = None

    @property
    def merged(self) -> list[str]:
        return [e.task_id for e in self.entries if e.status is MergeStatus.MERGED]

    @property
    def success(self) -> bool:
        """True when every task in the run merged."""
        return bool(self.outcomes) and all(o.phase is Phase.MERGED for o in self.outcomes)

    def entry(self, task_id: str) -> MergeEntry | None:
        for item in self.entries:
            if item.task_id == task_id:
                return item
        return None

    def outcome(self, task_id: str) -> TaskOutcome | None:
        for item in self.outcomes:
            if item.task_id == task_id:
                return item
        return None


__all__ = [
    "ConflictEdge",
    "MergeEntry",
    "MergeOutcome",
    "MergePlan",
    "MergeReport",
    "MergeStatus",
    "PhaseOutcome",
    "PhaseResult",
    "TaskOutcome",
    "ValidationOutcome",
    "WorkspaceHandle",
]
