"""Phase advancement for individual tasks.

Each task runs exploring -> planning -> implementing -> reviewing in its own
workspace. Phases of one task are strictly sequential; different tasks
advance concurrently up to ``max_parallel``. Cancellation is cooperative and
only observed between phases, so an in-flight phase call always completes.

[invariant:async-io] All collaborator calls are awaited; no blocking I/O.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable

from swarmctl.core.result import InvalidTransition, SwarmError
from swarmctl.core.retry import RetryPolicy, call_with_retry
from swarmctl.structures.task import Phase, ReviewVerdict
from swarmctl.swarm.providers import PhaseWorker, WorkspacePool
from swarmctl.swarm.registry import TaskRegistry
from swarmctl.swarm.types import PhaseOutcome, PhaseResult, WorkspaceHandle

logger = logging.getLogger(__name__)

TouchSetCallback = Callable[[str, frozenset[str]], None]
CancelCheck = Callable[[str], bool]

CANCELLED = "cancelled by operator"


class PhaseScheduler:
    """Drives tasks through the phase pipeline.

    Attributes:
        retained: Tasks whose workspace was kept after an implementing failure
    """

    def __init__(
        self,
        registry: TaskRegistry,
        pool: WorkspacePool,
        worker: PhaseWorker,
        *,
        review_retries: int = 1,
        max_parallel: int = 4,
        retry_policy: RetryPolicy | None = None,
        on_touch_set: TouchSetCallback | None = None,
        should_cancel: CancelCheck | None = None,
    ) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self._registry = registry
        self._pool = pool
        self._worker = worker
        self._review_retries = review_retries
        self._max_parallel = max_parallel
        self._retry = retry_policy or RetryPolicy()
        self._on_touch_set = on_touch_set
        self._should_cancel = should_cancel or (lambda _task_id: False)
        self.retained: set[str] = set()

    async def advance(self, task_id: str) -> PhaseResult:
        """Run a pending task through every phase up to its review verdict."""
        task = self._registry.get(task_id)
        if task.is_terminal:
            return PhaseResult(task_id=task_id, phase=task.phase, ok=False, error=task.error)
        if task.phase is not Phase.PENDING:
            raise InvalidTransition(task_id, task.phase.value, Phase.EXPLORING.value)
        if self._should_cancel(task_id):
            return await self._abort(task_id)

        try:
            handle = await self._pool.acquire(task_id)
        except SwarmError as exc:
            return await self._fail(task_id, f"workspace allocation failed: {exc}", release=False)

        for phase in (Phase.EXPLORING, Phase.PLANNING):
            if self._should_cancel(task_id):
                return await self._abort(task_id)
            self._registry.transition(task_id, phase)
            outcome = await self._run_phase(phase, task_id, handle)
            if not outcome.ok:
                return await self._fail(task_id, f"{phase.value}: {outcome.detail}", release=True)
            if phase is Phase.PLANNING and outcome.touch_set is not None:
                self._record_touch_set(task_id, outcome.touch_set)

        stopped = await self._implement(task_id, handle)
        if stopped is not None:
            return stopped
        return await self._review(task_id, handle, auto_retries=self._review_retries)

    async def advance_all(self, task_ids: Iterable[str]) -> dict[str, PhaseResult]:
        """Advance many tasks concurrently, at most ``max_parallel`` at a time."""
        semaphore = asyncio.Semaphore(self._max_parallel)

        async def _run_one(task_id: str) -> PhaseResult:
            async with semaphore:
                return await self.advance(task_id)

        async with asyncio.TaskGroup() as tg:
            handles = {task_id: tg.create_task(_run_one(task_id)) for task_id in task_ids}

        return {task_id: handle.result() for task_id, handle in handles.items()}

    async def rework(self, task_id: str) -> PhaseResult:
        """Run one more implementing -> reviewing cycle for a stalled task.

        This is the only way out of ``blocked``; operators reach it through
        ``OrchestratorController.rework``. A second changes-requested verdict
        escalates straight back to ``blocked``.
        """
        task = self._registry.get(task_id)
        if task.phase not in (Phase.BLOCKED, Phase.CHANGES_REQUESTED):
            raise InvalidTransition(task_id, task.phase.value, Phase.IMPLEMENTING.value)

        handle = self._pool.get(task_id)
        if handle is None:
            try:
                handle = await self._pool.acquire(task_id)
            except SwarmError as exc:
                return PhaseResult(task_id=task_id, phase=task.phase, ok=False, error=str(exc))

        self._registry.record_rework(task_id)
        stopped = await self._implement(task_id, handle)
        if stopped is not None:
            return stopped
        return await self._review(task_id, handle, auto_retries=0)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _implement(self, task_id: str, handle: WorkspaceHandle) -> PhaseResult | None:
        """Run the implementing phase; returns a result only when the task stops."""
        if self._should_cancel(task_id):
            return await self._abort(task_id)

        self._registry.transition(task_id, Phase.IMPLEMENTING)
        outcome = await self._run_phase(Phase.IMPLEMENTING, task_id, handle)
        if not outcome.ok:
            self.retained.add(task_id)
            return await self._fail(task_id, f"implementing: {outcome.detail}", release=False)

        touch_set = outcome.touch_set
        if touch_set is None:
            try:
                touch_set = await call_with_retry(
                    lambda: self._pool.provider.proposed_touch_set(handle),
                    self._retry,
                    describe=f"touch-set of {task_id}",
                )
            except SwarmError as exc:
                self.retained.add(task_id)
                return await self._fail(task_id, f"implementing: {exc}", release=False)
        self._record_touch_set(task_id, touch_set)
        return None

    async def _review(self, task_id: str, handle: WorkspaceHandle, *, auto_retries: int) -> PhaseResult:
        while True:
            if self._should_cancel(task_id):
                return await self._abort(task_id)

            self._registry.transition(task_id, Phase.REVIEWING)
            outcome = await self._run_phase(Phase.REVIEWING, task_id, handle)
            if outcome.ok:
                verdict = outcome.verdict or ReviewVerdict.APPROVED
                detail = outcome.detail if verdict is not ReviewVerdict.APPROVED else None
            else:
                # A review that cannot complete still has to end in a verdict.
                verdict = ReviewVerdict.BLOCKED
                detail = f"reviewing: {outcome.detail}"

            task = self._registry.transition(task_id, verdict, error=detail)
            logger.info("%s review verdict: %s", task_id, verdict.value)

            match verdict:
                case ReviewVerdict.APPROVED:
                    if self._should_cancel(task_id):
                        return await self._abort(task_id)
                    return PhaseResult(task_id=task_id, phase=task.phase, ok=True)
                case ReviewVerdict.BLOCKED:
                    return PhaseResult(task_id=task_id, phase=task.phase, ok=False, error=detail)
                case _:
                    pass

            if auto_retries <= 0:
                task = self._registry.transition(
                    task_id, Phase.BLOCKED, error=detail or "changes requested after final review"
                )
                logger.warning("%s escalated to blocked after review", task_id)
                return PhaseResult(task_id=task_id, phase=task.phase, ok=False, error=task.error)

            auto_retries -= 1
            self._registry.record_rework(task_id)
            stopped = await self._implement(task_id, handle)
            if stopped is not None:
                return stopped

    async def _run_phase(self, phase: Phase, task_id: str, handle: WorkspaceHandle) -> PhaseOutcome:
        task = self._registry.get(task_id)
        logger.debug("%s: running %s", task_id, phase.value)
        try:
            return await call_with_retry(
                lambda: self._worker.run(phase, task, handle),
                self._retry,
                describe=f"{phase.value} {task_id}",
            )
        except InvalidTransition:
            raise
        except SwarmError as exc:
            return PhaseOutcome.failure(str(exc))
        except Exception as exc:
            # A crashing worker fails its own task; siblings keep running.
            logger.exception("%s: %s worker crashed", task_id, phase.value)
            return PhaseOutcome.failure(f"{type(exc).__name__}: {exc}")

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _record_touch_set(self, task_id: str, resources: frozenset[str]) -> None:
        self._registry.set_touch_set(task_id, resources)
        if self._on_touch_set is not None:
            self._on_touch_set(task_id, resources)

    async def _fail(self, task_id: str, detail: str, *, release: bool) -> PhaseResult:
        task = self._registry.transition(task_id, Phase.FAILED, error=detail)
        logger.warning("%s failed: %s", task_id, detail)
        if release:
            await self._release(task_id)
        return PhaseResult(task_id=task_id, phase=task.phase, ok=False, error=detail)

    async def _abort(self, task_id: str) -> PhaseResult:
        task = self._registry.transition(task_id, Phase.ABORTED, error=CANCELLED)
        logger.info("%s aborted", task_id)
        await self._release(task_id)
        return PhaseResult(task_id=task_id, phase=task.phase, ok=False, error=CANCELLED)

    async def _release(self, task_id: str) -> None:
        try:
            await self._pool.release(task_id)
        except SwarmError as exc:
            logger.warning("Could not release workspace of %s: %s", task_id, exc)


__all__ = ["CANCELLED", "CancelCheck", "PhaseScheduler", "TouchSetCallback"]
