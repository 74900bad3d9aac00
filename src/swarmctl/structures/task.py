"""Task model and phase state machine for orchestration runs.

A task moves through a fixed pipeline::

    pending -> exploring -> planning -> implementing -> reviewing
    reviewing -> approved | changes-requested | blocked
    changes-requested -> implementing | blocked
    approved -> merged | failed

Any non-terminal state may be cancelled into ``aborted``; the first four
pipeline states may fail into ``failed``. ``merged``, ``failed`` and
``aborted`` are terminal.

Key classes:
- Phase: Position in the pipeline
- ReviewVerdict: Outcome of the reviewing phase
- IntegrationResult: Outcome of integration into the baseline
- Task: Immutable snapshot of one task's record
- TransitionRecord: One entry of the audit trail

[invariant:typing] All types are explicit; mypy --strict compliant.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Final

from pydantic import BaseModel, ConfigDict, Field


class Phase(str, Enum):
    """Lifecycle position of a task."""

    PENDING = "pending"
    EXPLORING = "exploring"
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes-requested"
    BLOCKED = "blocked"
    MERGED = "merged"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


class ReviewVerdict(str, Enum):
    """Structured review outcome."""

    UNREVIEWED = "unreviewed"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes-requested"
    BLOCKED = "blocked"


class IntegrationResult(str, Enum):
    """Outcome of merging a task into the baseline."""

    PENDING = "pending"
    MERGED = "merged"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_PHASES: Final[frozenset[Phase]] = frozenset(
    {Phase.MERGED, Phase.FAILED, Phase.ABORTED}
)

# Allowed phase -> phase moves. Verdicts and integration results are mapped
# onto phases by the registry and checked against this same table.
TRANSITIONS: Final[dict[Phase, frozenset[Phase]]] = {
    Phase.PENDING: frozenset({Phase.EXPLORING, Phase.FAILED, Phase.ABORTED}),
    Phase.EXPLORING: frozenset({Phase.PLANNING, Phase.FAILED, Phase.ABORTED}),
    Phase.PLANNING: frozenset({Phase.IMPLEMENTING, Phase.FAILED, Phase.ABORTED}),
    Phase.IMPLEMENTING: frozenset({Phase.REVIEWING, Phase.FAILED, Phase.ABORTED}),
    Phase.REVIEWING: frozenset(
        {Phase.APPROVED, Phase.CHANGES_REQUESTED, Phase.BLOCKED, Phase.ABORTED}
    ),
    Phase.CHANGES_REQUESTED: frozenset({Phase.IMPLEMENTING, Phase.BLOCKED, Phase.ABORTED}),
    Phase.BLOCKED: frozenset({Phase.IMPLEMENTING, Phase.ABORTED}),
    Phase.APPROVED: frozenset({Phase.MERGED, Phase.FAILED, Phase.ABORTED}),
    Phase.MERGED: frozenset(),
    Phase.FAILED: frozenset(),
    Phase.ABORTED: frozenset(),
}

VERDICT_PHASES: Final[dict[ReviewVerdict, Phase]] = {
    ReviewVerdict.APPROVED: Phase.APPROVED,
    ReviewVerdict.CHANGES_REQUESTED: Phase.CHANGES_REQUESTED,
    ReviewVerdict.BLOCKED: Phase.BLOCKED,
}

INTEGRATION_PHASES: Final[dict[IntegrationResult, Phase]] = {
    IntegrationResult.MERGED: Phase.MERGED,
    IntegrationResult.FAILED: Phase.FAILED,
    IntegrationResult.ABORTED: Phase.ABORTED,
}


def can_transition(source: Phase, target: Phase) -> bool:
    """Return True if the state machine allows ``source -> target``."""
    return target in TRANSITIONS[source]


class Task(BaseModel):
    """Immutable snapshot of a task record.

    Attributes:
        id: Unique task identifier (e.g., 'task-001')
        description: Opaque statement of intent, never interpreted
        phase: Current pipeline position
        touch_set: Resources the task declared or was observed to modify
        depends_on: Task ids that must integrate before this task
        blocks: Task ids that depend on this task (inverse of depends_on)
        review_verdict: Latest review outcome
        integration_result: Outcome of integration into the baseline
        error: Last recorded failure detail
        priority: Caller supplied ordering hint for the priority tie-break
        rework_count: Implementing cycles triggered by review feedback
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., description="Unique task identifier (e.g., 'task-001')")
    description: str = Field(..., description="What this task should accomplish")
    phase: Phase = Field(default=Phase.PENDING)
    touch_set: frozenset[str] = Field(default_factory=frozenset)
    depends_on: frozenset[str] = Field(default_factory=frozenset)
    blocks: frozenset[str] = Field(default_factory=frozenset)
    review_verdict: ReviewVerdict = Field(default=ReviewVerdict.UNREVIEWED)
    integration_result: IntegrationResult = Field(default=IntegrationResult.PENDING)
    error: str | None = None
    priority: int = Field(default=0)
    rework_count: int = Field(default=0)

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal


class TransitionRecord(BaseModel):
    """One audited state change."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    source: Phase
    target: Phase
    timestamp: datetime
    detail: str | None = None


__all__ = [
    "INTEGRATION_PHASES",
    "IntegrationResult",
    "Phase",
    "ReviewVerdict",
    "TERMINAL_PHASES",
    "TRANSITIONS",
    "Task",
    "TransitionRecord",
    "VERDICT_PHASES",
    "can_transition",
]
