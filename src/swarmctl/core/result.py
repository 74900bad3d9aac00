"""
Unified Result types and error hierarchy for swarmctl.

This module provides:
1. Result[T, E] type for explicit error handling at component seams
2. The orchestration error taxonomy

Usage:
    from swarmctl.core.result import Ok, Err, Result, CycleError

    def compute() -> Result[MergePlan, CycleError]:
        if cycle:
            return Err(CycleError([["task-001", "task-002"]]))
        return Ok(plan)

    match compute():
        case Ok(plan):
            ...
        case Err(err):
            print(err.members)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E", bound=Exception)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Represents a successful result containing a value."""

    value: T

    def unwrap(self) -> T:
        """Return the contained value."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Return the contained value (ignores default for Ok)."""
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply a function to the contained value."""
        return Ok(fn(self.value))


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Represents a failed result containing an error."""

    error: E

    def unwrap(self) -> T:
        """Raise the contained error."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        """Return the default value."""
        return default

    def map(self, fn: Callable[[T], U]) -> Err[E]:
        """No-op for Err - returns self unchanged."""
        return self


# Type alias for Result
Result = Ok[T] | Err[E]


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class SwarmError(Exception):
    """Base exception for all swarmctl errors.

    Carries an optional context mapping that is rendered after the message,
    so failures recorded on a task keep their origin (paths, branches, ids).
    """

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class InvalidTransition(SwarmError):
    """Raised when a task update violates the phase state machine.

    This is an ordering bug in the engine, never a task failure: a run that
    hits it is aborted.
    """

    def __init__(self, task_id: str, source: str, target: str) -> None:
        super().__init__(
            f"Invalid transition for {task_id}: {source} -> {target}",
            context={"task_id": task_id},
        )
        self.task_id = task_id
        self.source = source
        self.target = target


class CycleError(SwarmError):
    """The explicit dependency graph contains at least one cycle.

    Attributes:
        members: Every task id that sits on a cycle, sorted.
        cycles: The individual cycles (strongly connected groups), each sorted.
    """

    def __init__(self, cycles: Sequence[Sequence[str]]) -> None:
        groups = sorted(sorted(group) for group in cycles)
        members = sorted({task_id for group in groups for task_id in group})
        super().__init__(f"Dependency cycle between: {', '.join(members)}")
        self.cycles: list[list[str]] = groups
        self.members: list[str] = members


class PhaseFailure(SwarmError):
    """A phase worker could not complete a phase for one task."""


class MergeConflict(SwarmError):
    """The workspace provider reported a conflict while integrating a task."""


class ValidationFailure(SwarmError):
    """The baseline failed validation after a merge."""


class ProviderUnavailable(SwarmError):
    """A collaborator is temporarily unreachable; the call may be retried."""


class ConfigurationError(SwarmError):
    """Raised for configuration issues.

    Examples:
    - Missing required config fields
    - Invalid config values
    - Config or task file parse errors
    """


class ValidationError(SwarmError):
    """Raised for input validation failures.

    Examples:
    - Dependency naming an unknown task
    - Empty task description
    - Unknown run id
    """


class WorkspaceError(SwarmError):
    """Raised for workspace-related issues.

    Examples:
    - Second workspace requested for the same task
    - Worktree root cannot be created
    - Not a git repository
    """


class GitError(WorkspaceError):
    """A git subprocess failed."""


class SystemResourceError(SwarmError):
    """A local command could not be started or did not finish in time."""


__all__ = [
    # Result types
    "Ok",
    "Err",
    "Result",
    # Error hierarchy
    "SwarmError",
    "InvalidTransition",
    "CycleError",
    "PhaseFailure",
    "MergeConflict",
    "ValidationFailure",
    "ProviderUnavailable",
    "ConfigurationError",
    "ValidationError",
    "WorkspaceError",
    "GitError",
    "SystemResourceError",
]
