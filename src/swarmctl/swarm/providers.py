"""Collaborator protocols and workspace ownership tracking.

The engine never touches files or runs phases itself. It talks to two
collaborators:

- WorkspaceProvider: isolated working copies, integration and validation
- PhaseWorker: the actual work of one phase for one task

``WorkspacePool`` sits between the engine and the provider and enforces that
each task owns at most one workspace at a time.

[invariant:typing] All types explicit; mypy --strict compliant.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from swarmctl.core.result import WorkspaceError
from swarmctl.core.retry import RetryPolicy, call_with_retry
from swarmctl.structures.task import Phase, Task
from swarmctl.swarm.types import MergeOutcome, PhaseOutcome, ValidationOutcome, WorkspaceHandle

logger = logging.getLogger(__name__)


class WorkspaceProvider(Protocol):
    """Creates working copies and integrates them into the baseline.

    Any method may raise ``ProviderUnavailable`` for transient failures; the
    engine retries those with backoff.
    """

    async def allocate(self, task_id: str, baseline: str) -> WorkspaceHandle:
        """Create an isolated working copy for ``task_id`` based on ``baseline``."""
        ...

    async def release(self, handle: WorkspaceHandle) -> None:
        """Destroy the working copy."""
        ...

    async def proposed_touch_set(self, handle: WorkspaceHandle) -> frozenset[str]:
        """Resources modified in the working copy relative to its base."""
        ...

    async def merge(self, handle: WorkspaceHandle, baseline: str) -> MergeOutcome:
        """Integrate the working copy into ``baseline``.

        A conflict is reported through ``MergeOutcome.conflicts`` with the
        baseline left untouched.
        """
        ...

    async def validate(self, baseline: str) -> ValidationOutcome:
        """Check the baseline after a merge."""
        ...

    async def revert(self, baseline: str, outcome: MergeOutcome) -> None:
        """Undo a merge previously reported by ``merge``."""
        ...


class PhaseWorker(Protocol):
    """Performs one phase of one task inside its workspace.

    Returning ``PhaseOutcome.failure`` or raising ``PhaseFailure`` fails the
    task; raising ``ProviderUnavailable`` asks for a retry.
    """

    async def run(self, phase: Phase, task: Task, handle: WorkspaceHandle) -> PhaseOutcome:
        ...


class WorkspacePool:
    """Tracks which task owns which workspace.

    Attributes:
        provider: The underlying workspace provider
        baseline: Baseline new workspaces are created from
    """

    def __init__(
        self,
        provider: WorkspaceProvider,
        *,
        baseline: str,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.provider = provider
        self.baseline = baseline
        self._retry = retry_policy or RetryPolicy()
        self._active: dict[str, WorkspaceHandle] = {}
        self._pending: set[str] = set()
        self._lock = asyncio.Lock()

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._active

    @property
    def active(self) -> dict[str, WorkspaceHandle]:
        return dict(self._active)

    def get(self, task_id: str) -> WorkspaceHandle | None:
        return self._active.get(task_id)

    async def acquire(self, task_id: str) -> WorkspaceHandle:
        """Allocate the task's workspace.

        Raises:
            WorkspaceError: If the task already owns a workspace
            ProviderUnavailable: If allocation stayed unavailable after retries
        """
        async with self._lock:
            if task_id in self._active or task_id in self._pending:
                raise WorkspaceError(
                    "Task already owns a workspace", context={"task_id": task_id}
                )
            self._pending.add(task_id)

        try:
            handle = await call_with_retry(
                lambda: self.provider.allocate(task_id, self.baseline),
                self._retry,
                describe=f"allocate {task_id}",
            )
        finally:
            self._pending.discard(task_id)

        self._active[task_id] = handle
        logger.debug("Workspace for %s at %s (%s)", task_id, handle.path, handle.branch)
        return handle

    async def release(self, task_id: str) -> None:
        """Release the task's workspace, if it holds one."""
        handle = self._active.pop(task_id, None)
        if handle is None:
            return
        await call_with_retry(
            lambda: self.provider.release(handle),
            self._retry,
            describe=f"release {task_id}",
        )
        logger.debug("Released workspace of %s", task_id)

    async def release_all(self, *, keep: set[str] | None = None) -> None:
        """Release every workspace except those listed in ``keep``."""
        keep = keep or set()
        for task_id in list(self._active):
            if task_id in keep:
                logger.info("Preserving workspace of %s at %s", task_id, self._active[task_id].path)
                continue
            await self.release(task_id)


__all__ = ["PhaseWorker", "WorkspacePool", "WorkspaceProvider"]
