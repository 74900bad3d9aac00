"""Serialized integration of approved tasks into the baseline.

The sequencer is the only component that touches the baseline. It holds a
lock for the whole pass and brings each task in the plan to a terminal merge
outcome before looking at the next one. A failed merge or validation halts
only the explicit dependents of the failed task; tasks that were merely
ordered after it because of a shared resource still proceed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from swarmctl.core.result import MergeConflict, SwarmError, ValidationFailure
from swarmctl.core.retry import RetryPolicy, call_with_retry
from swarmctl.structures.task import IntegrationResult, Phase, ReviewVerdict
from swarmctl.swarm.providers import WorkspacePool
from swarmctl.swarm.registry import TaskRegistry
from swarmctl.swarm.scheduler import CANCELLED
from swarmctl.swarm.types import MergeEntry, MergeOutcome, MergePlan, MergeReport, MergeStatus

logger = logging.getLogger(__name__)


class MergeSequencer:
    """Merges tasks one at a time in plan order, validating after each."""

    def __init__(
        self,
        registry: TaskRegistry,
        pool: WorkspacePool,
        *,
        retry_policy: RetryPolicy | None = None,
        should_cancel: Callable[[str], bool] | None = None,
    ) -> None:
        self._registry = registry
        self._pool = pool
        self._retry = retry_policy or RetryPolicy()
        self._should_cancel = should_cancel or (lambda _task_id: False)
        self._baseline_lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._baseline_lock.locked()

    async def run(self, plan: MergePlan) -> MergeReport:
        """Integrate every task of ``plan`` in order.

        The plan is frozen before the first merge; later touch-set changes no
        longer affect this pass.
        """
        plan = plan.freeze()
        report = MergeReport(order=list(plan.order))

        async with self._baseline_lock:
            for task_id in plan.order:
                entry = await self._integrate(task_id)
                if entry is None:
                    continue
                report.entries.append(entry)
                log = logger.info if entry.status is MergeStatus.MERGED else logger.warning
                log("%s: %s%s", task_id, entry.status.value, f" ({entry.detail})" if entry.detail else "")

        return report

    async def _integrate(self, task_id: str) -> MergeEntry | None:
        task = self._registry.get(task_id)

        if task.phase is Phase.ABORTED or (not task.is_terminal and self._should_cancel(task_id)):
            if not task.is_terminal:
                task = self._registry.transition(task_id, IntegrationResult.ABORTED, error=CANCELLED)
                await self._release(task_id)
            return MergeEntry(task_id=task_id, status=MergeStatus.ABORTED, detail=task.error)
        if task.is_terminal:
            return None

        unmet = sorted(
            dep for dep in task.depends_on if self._registry.get(dep).phase is not Phase.MERGED
        )
        if unmet:
            return MergeEntry(
                task_id=task_id,
                status=MergeStatus.BLOCKED_BY_DEPENDENCY,
                detail=f"waiting on {', '.join(unmet)}",
                blocked_by=unmet,
            )

        if task.review_verdict is not ReviewVerdict.APPROVED:
            return MergeEntry(
                task_id=task_id,
                status=MergeStatus.AWAITING_APPROVAL,
                detail=f"review verdict is {task.review_verdict.value}",
            )

        handle = self._pool.get(task_id)
        if handle is None:
            return self._failed(task_id, MergeStatus.PROVIDER_ERROR, "no workspace to merge")

        baseline = self._pool.baseline
        provider = self._pool.provider
        try:
            outcome = await call_with_retry(
                lambda: provider.merge(handle, baseline),
                self._retry,
                describe=f"merge {task_id}",
            )
        except SwarmError as exc:
            return self._failed(task_id, MergeStatus.PROVIDER_ERROR, str(exc))

        if not outcome.merged:
            if outcome.conflicts:
                message = f"merge conflict on {', '.join(outcome.conflicts)}"
            else:
                message = outcome.detail or "merge refused"
            conflict = MergeConflict(message, context={"task_id": task_id})
            return self._failed(task_id, MergeStatus.CONFLICT, str(conflict))

        try:
            validation = await call_with_retry(
                lambda: provider.validate(baseline),
                self._retry,
                describe=f"validate after {task_id}",
            )
        except SwarmError as exc:
            return await self._revert(task_id, outcome, MergeStatus.PROVIDER_ERROR, str(exc))

        if not validation.passed:
            failure = ValidationFailure(
                validation.detail or "baseline validation failed", context={"task_id": task_id}
            )
            return await self._revert(task_id, outcome, MergeStatus.VALIDATION_FAILED, str(failure))

        self._registry.transition(task_id, IntegrationResult.MERGED)
        await self._release(task_id)
        return MergeEntry(task_id=task_id, status=MergeStatus.MERGED, commit=outcome.commit)

    def _failed(self, task_id: str, status: MergeStatus, detail: str) -> MergeEntry:
        self._registry.transition(task_id, IntegrationResult.FAILED, error=detail)
        return MergeEntry(task_id=task_id, status=status, detail=detail)

    async def _revert(
        self, task_id: str, outcome: MergeOutcome, status: MergeStatus, detail: str
    ) -> MergeEntry:
        """Undo a merge that cannot stay in the baseline and fail its task."""
        logger.warning("Reverting merge of %s", task_id)
        try:
            await call_with_retry(
                lambda: self._pool.provider.revert(self._pool.baseline, outcome),
                self._retry,
                describe=f"revert {task_id}",
            )
        except SwarmError as exc:
            logger.error("Baseline still contains the merge of %s: %s", task_id, exc)
            return self._failed(task_id, MergeStatus.PROVIDER_ERROR, f"{detail}; revert failed: {exc}")
        return self._failed(task_id, status, detail)

    async def _release(self, task_id: str) -> None:
        try:
            await self._pool.release(task_id)
        except SwarmError as exc:
            logger.warning("Could not release workspace of %s: %s", task_id, exc)


__all__ = ["MergeSequencer"]
