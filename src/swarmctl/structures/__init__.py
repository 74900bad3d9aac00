"""Data structures for tasks and their lifecycle."""

from __future__ import annotations

from swarmctl.structures.task import (
    IntegrationResult,
    Phase,
    ReviewVerdict,
    Task,
    TransitionRecord,
)

__all__ = [
    "IntegrationResult",
    "Phase",
    "ReviewVerdict",
    "Task",
    "TransitionRecord",
]
