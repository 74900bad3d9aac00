"""Multi-task orchestration with git worktree isolation.

Tasks advance through explore, plan, implement and review phases in their
own workspaces, concurrently. Touch-sets reported along the way determine
which tasks conflict; conflicting and dependent tasks are merged into the
baseline one at a time, in a deterministic order, with validation after
each merge.

Key classes:
- OrchestratorController: Control surface (submit, status, cancel, result)
- TaskRegistry: Task records and the phase state machine
- DependencyAnalyzer: Conflict graph and merge order
- PhaseScheduler: Concurrent phase advancement
- MergeSequencer: Serialized merge and validation
- GitWorkspaceProvider: Workspaces as git worktrees
- CommandPhaseWorker: Phases as configured commands

[invariant:typing] All types are explicit; mypy --strict compliant.
[invariant:async-io] All I/O operations use async patterns.
"""

from swarmctl.swarm.analyzer import DependencyAnalyzer, TieBreak
from swarmctl.swarm.controller import OrchestratorController
from swarmctl.swarm.providers import PhaseWorker, WorkspacePool, WorkspaceProvider
from swarmctl.swarm.registry import TaskRegistry
from swarmctl.swarm.scheduler import PhaseScheduler
from swarmctl.swarm.sequencer import MergeSequencer
from swarmctl.swarm.store import RunState, RunStatus, RunStore
from swarmctl.swarm.types import (
    ConflictEdge,
    MergeEntry,
    MergeOutcome,
    MergePlan,
    MergeReport,
    MergeStatus,
    PhaseOutcome,
    PhaseResult,
    TaskOutcome,
    ValidationOutcome,
    WorkspaceHandle,
)
from swarmctl.swarm.workers import CommandPhaseWorker
from swarmctl.swarm.worktree import GitWorkspaceProvider

__all__ = [
    "CommandPhaseWorker",
    "ConflictEdge",
    "DependencyAnalyzer",
    "GitWorkspaceProvider",
    "MergeEntry",
    "MergeOutcome",
    "MergePlan",
    "MergeReport",
    "MergeSequencer",
    "MergeStatus",
    "OrchestratorController",
    "PhaseOutcome",
    "PhaseResult",
    "PhaseScheduler",
    "PhaseWorker",
    "RunState",
    "RunStatus",
    "RunStore",
    "TaskOutcome",
    "TaskRegistry",
    "TieBreak",
    "ValidationOutcome",
    "WorkspaceHandle",
    "WorkspacePool",
    "WorkspaceProvider",
]
