"""Orchestrator controller: the control surface for orchestration runs.

Workflow of one run:
1. Register tasks and explicit dependencies
2. Reject dependency cycles before any work starts
3. Advance every task through its phases, at most ``max_parallel`` at once
4. Keep the merge plan current as touch-sets arrive and tasks drop out
5. Freeze the plan and merge approved tasks one at a time
6. Release workspaces and publish the report

[invariant:typing] All types explicit; mypy --strict compliant
[invariant:async-io] All I/O uses async patterns
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from swarmctl.core.config import AppConfig
from swarmctl.core.result import (
    CycleError,
    Err,
    InvalidTransition,
    Ok,
    Result,
    SwarmError,
    ValidationError,
)
from swarmctl.core.retry import RetryPolicy
from swarmctl.structures.task import Phase, Task
from swarmctl.swarm.analyzer import DependencyAnalyzer
from swarmctl.swarm.providers import PhaseWorker, WorkspacePool, WorkspaceProvider
from swarmctl.swarm.registry import TaskRegistry
from swarmctl.swarm.scheduler import PhaseScheduler
from swarmctl.swarm.sequencer import MergeSequencer
from swarmctl.swarm.store import RunState, RunStatus, RunStore
from swarmctl.swarm.types import MergeEntry, MergePlan, MergeReport, MergeStatus, TaskOutcome

logger = logging.getLogger(__name__)

Dependency = tuple[str, str]


@dataclass
class _Run:
    """In-memory state of one run."""

    run_id: str
    registry: TaskRegistry
    analyzer: DependencyAnalyzer
    pool: WorkspacePool
    scheduler: PhaseScheduler | None = None
    sequencer: MergeSequencer | None = None
    cancel_requests: set[str] = field(default_factory=set)
    plan: MergePlan | None = None
    report: MergeReport | None = None
    status: RunStatus = RunStatus.RUNNING
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    finished_at: str | None = None
    task: asyncio.Task[None] | None = None
    persisting: asyncio.Task[None] | None = None


class OrchestratorController:
    """Accepts runs and reports on them.

    Attributes:
        config: Application configuration
        provider: Workspace provider shared by every run
        worker: Phase worker shared by every run
        store: Optional journal for cross-process status and cancellation
    """

    def __init__(
        self,
        config: AppConfig,
        provider: WorkspaceProvider,
        worker: PhaseWorker,
        *,
        store: RunStore | None = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.worker = worker
        self.store = store
        self._retry = RetryPolicy.from_config(config.retry)
        self._runs: dict[str, _Run] = {}

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def submit(
        self,
        descriptions: Sequence[str],
        dependencies: Sequence[Dependency] = (),
        *,
        priorities: Sequence[int] | None = None,
    ) -> Result[str, ValidationError]:
        """Register a run and start it in the background.

        Args:
            descriptions: One entry per task; the first becomes ``task-001``
            dependencies: ``(task_id, depends_on_id)`` pairs using those ids
            priorities: Optional per-task priority for the priority tie-break

        Returns:
            Ok(run_id), or Err(ValidationError) for malformed input
        """
        if not descriptions:
            return Err(ValidationError("A run needs at least one task"))
        if priorities is not None and len(priorities) != len(descriptions):
            return Err(ValidationError("priorities must match descriptions one to one"))
        for index, description in enumerate(descriptions, start=1):
            if not description.strip():
                return Err(ValidationError(f"Task #{index} has an empty description"))

        registry = TaskRegistry()
        analyzer = DependencyAnalyzer(self.config.orchestrator.tie_break)
        for index, description in enumerate(descriptions):
            priority = priorities[index] if priorities is not None else 0
            task_id = registry.create(description, priority=priority)
            analyzer.add_task(task_id, priority=priority)

        for task_id, depends_on in dependencies:
            unknown = [tid for tid in (task_id, depends_on) if tid not in registry]
            if unknown:
                return Err(
                    ValidationError(
                        f"Dependency names unknown task: {', '.join(unknown)}",
                        context={"dependency": f"{task_id}->{depends_on}"},
                    )
                )
            registry.add_dependency(task_id, depends_on)
            analyzer.add_explicit_dependency(task_id, depends_on)

        run_id = uuid.uuid4().hex[:8]
        pool = WorkspacePool(
            self.provider,
            baseline=self.config.workspace.baseline_branch,
            retry_policy=self._retry,
        )
        run = _Run(run_id=run_id, registry=registry, analyzer=analyzer, pool=pool)
        run.scheduler = PhaseScheduler(
            registry,
            pool,
            self.worker,
            review_retries=self.config.orchestrator.review_retries,
            max_parallel=self.config.orchestrator.max_parallel,
            retry_policy=self._retry,
            on_touch_set=lambda tid, resources: self._on_touch_set(run, tid, resources),
            should_cancel=lambda tid: self._cancel_requested(run, tid),
        )
        run.sequencer = MergeSequencer(
            registry,
            pool,
            retry_policy=self._retry,
            should_cancel=lambda tid: self._cancel_requested(run, tid),
        )
        registry.set_listener(lambda task: self._on_task_update(run, task))

        self._runs[run_id] = run
        self._persist(run)
        await self._flush(run)
        logger.info("Run %s submitted with %d tasks", run_id, len(descriptions))
        run.task = asyncio.get_running_loop().create_task(self._execute(run), name=f"run-{run_id}")
        return Ok(run_id)

    def status(self, run_id: str) -> Result[list[Task], SwarmError]:
        """Latest snapshot of every task in the run."""
        run = self._runs.get(run_id)
        if run is not None:
            return Ok(run.registry.list())
        state = self.store.load(run_id) if self.store else None
        if state is None:
            return Err(ValidationError(f"Unknown run: {run_id}"))
        return Ok(state.tasks)

    def cancel(self, run_id: str, task_id: str) -> Result[None, SwarmError]:
        """Request cooperative cancellation of one task.

        The task is aborted at its next phase boundary, or before its merge.
        """
        run = self._runs.get(run_id)
        if run is None:
            return self._cancel_persisted(run_id, task_id)
        if run.report is not None:
            return Err(ValidationError(f"Run {run_id} has already finished"))
        if task_id not in run.registry:
            return Err(ValidationError(f"Unknown task: {task_id}", context={"run_id": run_id}))
        task = run.registry.get(task_id)
        if task.is_terminal:
            return Err(ValidationError(f"{task_id} is already {task.phase.value}"))

        run.cancel_requests.add(task_id)
        logger.info("Cancellation requested for %s in run %s", task_id, run_id)
        return Ok(None)

    def result(self, run_id: str) -> Result[MergeReport, SwarmError]:
        """The final report, once the run is quiescent."""
        run = self._runs.get(run_id)
        if run is not None:
            if run.report is None:
                return Err(ValidationError(f"Run {run_id} is still in progress"))
            return Ok(run.report)
        state = self.store.load(run_id) if self.store else None
        if state is None:
            return Err(ValidationError(f"Unknown run: {run_id}"))
        if state.report is None:
            return Err(ValidationError(f"Run {run_id} is still in progress"))
        return Ok(state.report)

    async def wait(self, run_id: str) -> Result[MergeReport, SwarmError]:
        """Block until the run is quiescent and return its report."""
        run = self._runs.get(run_id)
        if run is not None and run.task is not None:
            await asyncio.shield(run.task)
        return self.result(run_id)

    async def rework(self, run_id: str, task_id: str) -> Result[MergeReport, SwarmError]:
        """Send a stalled task of a finished run back through implementing and review.

        This is the operator's way out of ``blocked``. When the new review
        approves, a follow-up merge pass integrates the task together with any
        dependents that were waiting on it, and the run's report is rebuilt.
        """
        run = self._runs.get(run_id)
        if run is None:
            return Err(ValidationError(f"Unknown run: {run_id}"))
        if run.report is None:
            return Err(ValidationError(f"Run {run_id} is still in progress"))
        if task_id not in run.registry:
            return Err(ValidationError(f"Unknown task: {task_id}", context={"run_id": run_id}))
        task = run.registry.get(task_id)
        if task.phase not in (Phase.BLOCKED, Phase.CHANGES_REQUESTED):
            return Err(ValidationError(f"{task_id} is {task.phase.value}, not blocked"))
        assert run.scheduler is not None and run.sequencer is not None

        logger.info("Reworking %s in run %s", task_id, run_id)
        previous = run.report
        entries = {entry.task_id: entry for entry in previous.entries}
        result = await run.scheduler.rework(task_id)
        if result.ok:
            waiting = tuple(tid for tid in previous.order if not run.registry.get(tid).is_terminal)
            followup = await run.sequencer.run(MergePlan(order=waiting))
            entries.update({entry.task_id: entry for entry in followup.entries})

        await self._cleanup(run)
        run.report = self._build_report(
            run,
            entries=[entries[tid] for tid in previous.order if tid in entries],
            cycle=previous.cycle,
            error=previous.error,
        )
        self._persist(run)
        await self._flush(run)
        return Ok(run.report)

    def plan(self, run_id: str) -> MergePlan | None:
        """Latest merge plan of the run (frozen once merging started)."""
        run = self._runs.get(run_id)
        if run is not None:
            return run.plan
        state = self.store.load(run_id) if self.store else None
        return state.plan if state else None

    # ------------------------------------------------------------------
    # Run execution
    # ------------------------------------------------------------------

    async def _execute(self, run: _Run) -> None:
        try:
            await self._drive(run)
        except* SwarmError as group:
            error = group.exceptions[0]
            logger.error("Run %s aborted: %s", run.run_id, error)
            self._abort_remaining(run, str(error))
            run.status = RunStatus.FAILED
            run.report = self._build_report(run, error=str(error))
        finally:
            await self._cleanup(run)
            run.finished_at = datetime.now(UTC).isoformat()
            if run.report is None:
                run.status = RunStatus.FAILED
                run.report = self._build_report(run, error="run interrupted")
            self._persist(run)
            await self._flush(run)
            logger.info(
                "Run %s finished: %d/%d merged",
                run.run_id,
                len(run.report.merged),
                len(run.registry),
            )

    async def _drive(self, run: _Run) -> None:
        assert run.scheduler is not None and run.sequencer is not None

        match run.analyzer.compute_order():
            case Err(cycle):
                self._stop_on_cycle(run, cycle)
                return
            case Ok(plan):
                run.plan = plan

        await run.scheduler.advance_all(run.registry.ids())

        plan = self._replan(run)
        if plan is None:
            return
        run.plan = plan.freeze()
        self._persist(run)

        report = await run.sequencer.run(run.plan)
        run.status = RunStatus.COMPLETED
        run.report = self._build_report(run, entries=report.entries)

    def _stop_on_cycle(self, run: _Run, cycle: CycleError) -> None:
        logger.error("Run %s cannot proceed: %s", run.run_id, cycle)
        self._abort_remaining(run, str(cycle))
        run.status = RunStatus.FAILED
        run.report = self._build_report(run, cycle=cycle.members, error=str(cycle))

    def _replan(self, run: _Run) -> MergePlan | None:
        match run.analyzer.compute_order():
            case Ok(plan):
                run.plan = plan
                return plan
            case Err(cycle):
                self._stop_on_cycle(run, cycle)
                return None

    def _abort_remaining(self, run: _Run, reason: str) -> None:
        for task in run.registry.list(lambda t: not t.is_terminal):
            try:
                run.registry.transition(task.id, Phase.ABORTED, error=reason)
            except InvalidTransition as exc:
                logger.error("Could not abort %s: %s", task.id, exc)

    async def _cleanup(self, run: _Run) -> None:
        keep: set[str] = set()
        if self.config.orchestrator.preserve_failed_workspaces and run.scheduler is not None:
            keep = {
                tid for tid in run.scheduler.retained if run.registry.get(tid).phase is Phase.FAILED
            }
        try:
            await run.pool.release_all(keep=keep)
        except SwarmError as exc:
            logger.warning("Workspace cleanup for run %s incomplete: %s", run.run_id, exc)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _cancel_requested(self, run: _Run, task_id: str) -> bool:
        if task_id in run.cancel_requests:
            return True
        if self.store is not None and task_id in self.store.cancel_requests(run.run_id):
            run.cancel_requests.add(task_id)
            return True
        return False

    def _on_touch_set(self, run: _Run, task_id: str, resources: frozenset[str]) -> None:
        run.analyzer.add_touch_set(task_id, resources)
        if run.plan is None or not run.plan.frozen:
            self._replan(run)
            self._persist(run)

    def _on_task_update(self, run: _Run, task: Task) -> None:
        if task.phase in (Phase.FAILED, Phase.ABORTED) and task.id in run.analyzer.task_ids:
            if run.plan is None or not run.plan.frozen:
                run.analyzer.remove_task(task.id)
                # Cycles were rejected up front, so removals cannot create one.
                match run.analyzer.compute_order():
                    case Ok(plan):
                        run.plan = plan
                    case Err(_):
                        pass
        self._persist(run)

    # ------------------------------------------------------------------
    # Reporting and persistence
    # ------------------------------------------------------------------

    def _build_report(
        self,
        run: _Run,
        *,
        entries: Sequence[MergeEntry] = (),
        cycle: Sequence[str] = (),
        error: str | None = None,
    ) -> MergeReport:
        by_task = {entry.task_id: entry for entry in entries}
        outcomes: list[TaskOutcome] = []
        for task in run.registry.list():
            entry = by_task.get(task.id)
            outcomes.append(
                TaskOutcome(
                    task_id=task.id,
                    description=task.description,
                    phase=task.phase,
                    review_verdict=task.review_verdict,
                    integration_result=task.integration_result,
                    merge_status=entry.status if entry else None,
                    error=task.error or (entry.detail if entry else None),
                    skipped_by_dependency=bool(
                        entry and entry.status is MergeStatus.BLOCKED_BY_DEPENDENCY
                    ),
                )
            )
        return MergeReport(
            run_id=run.run_id,
            order=list(run.plan.order) if run.plan else [],
            entries=list(entries),
            outcomes=outcomes,
            cycle=list(cycle),
            error=error,
        )

    def _persist(self, run: _Run) -> None:
        """Queue a journal write; writes land in the order they were queued."""
        if self.store is None:
            return
        state = RunState(
            run_id=run.run_id,
            status=run.status,
            started_at=run.started_at,
            finished_at=run.finished_at,
            tasks=run.registry.list(),
            history=run.registry.history(),
            plan=run.plan,
            report=run.report,
        )
        run.persisting = asyncio.get_running_loop().create_task(
            self._write(run.run_id, state, run.persisting)
        )

    async def _write(
        self, run_id: str, state: RunState, previous: asyncio.Task[None] | None
    ) -> None:
        assert self.store is not None
        if previous is not None:
            await previous
        try:
            await self.store.write(state)
        except OSError as exc:
            logger.warning("Could not persist run %s: %s", run_id, exc)

    async def _flush(self, run: _Run) -> None:
        if run.persisting is not None:
            await run.persisting

    def _cancel_persisted(self, run_id: str, task_id: str) -> Result[None, SwarmError]:
        """Forward a cancellation to a run owned by another process."""
        if self.store is None:
            return Err(ValidationError(f"Unknown run: {run_id}"))
        match self.store.request_cancel(run_id, task_id):
            case Ok(_):
                return Ok(None)
            case Err(err):
                return Err(err)


__all__ = ["Dependency", "OrchestratorController"]
