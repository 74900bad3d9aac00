"""Tests for PhaseScheduler phase advancement, review loops and cancellation."""

from __future__ import annotations

import asyncio

import pytest

from swarmctl.core.result import InvalidTransition
from swarmctl.core.retry import RetryPolicy
from swarmctl.structures.task import Phase, ReviewVerdict
from swarmctl.swarm.providers import WorkspacePool
from swarmctl.swarm.registry import TaskRegistry
from swarmctl.swarm.scheduler import CANCELLED, PhaseScheduler
from tests.mocks.fakes import FakeProvider, FakeWorker

FAST_RETRY = RetryPolicy(attempts=3, initial_delay=0.0)

A, B = "task-001", "task-002"


class Harness:
    """Registry, pool and scheduler wired to fakes."""

    def __init__(
        self,
        *,
        tasks: int = 1,
        provider: FakeProvider | None = None,
        worker: FakeWorker | None = None,
        review_retries: int = 1,
        max_parallel: int = 4,
    ) -> None:
        self.registry = TaskRegistry()
        for index in range(tasks):
            self.registry.create(f"task number {index + 1}")
        self.provider = provider or FakeProvider()
        self.worker = worker or FakeWorker()
        self.pool = WorkspacePool(self.provider, baseline="main", retry_policy=FAST_RETRY)
        self.cancelled: set[str] = set()
        self.touch_updates: list[tuple[str, frozenset[str]]] = []
        self.scheduler = PhaseScheduler(
            self.registry,
            self.pool,
            self.worker,
            review_retries=review_retries,
            max_parallel=max_parallel,
            retry_policy=FAST_RETRY,
            on_touch_set=lambda tid, resources: self.touch_updates.append((tid, resources)),
            should_cancel=self.cancelled.__contains__,
        )

    def phase(self, task_id: str) -> Phase:
        return self.registry.get(task_id).phase


class TestAdvance:
    @pytest.mark.asyncio
    async def test_runs_every_phase_in_order(self) -> None:
        h = Harness()
        result = await h.scheduler.advance(A)

        assert result.ok
        assert result.phase is Phase.APPROVED
        assert h.worker.phases_of(A) == [
            Phase.EXPLORING,
            Phase.PLANNING,
            Phase.IMPLEMENTING,
            Phase.REVIEWING,
        ]
        assert h.registry.get(A).review_verdict is ReviewVerdict.APPROVED
        # The workspace is held until the merge sequencer is done with it.
        assert A in h.pool
        assert h.provider.released == []

    @pytest.mark.asyncio
    async def test_touch_sets_are_recorded_and_refined(self) -> None:
        worker = FakeWorker(planned={A: {"a.py", "b.py"}}, touched={A: {"a.py"}})
        h = Harness(worker=worker)
        await h.scheduler.advance(A)

        assert h.touch_updates == [(A, frozenset({"a.py", "b.py"})), (A, frozenset({"a.py"}))]
        assert h.registry.get(A).touch_set == {"a.py"}

    @pytest.mark.asyncio
    async def test_touch_set_falls_back_to_workspace_diff(self) -> None:
        h = Harness(provider=FakeProvider(touch_sets={A: {"src/x.py"}}))
        await h.scheduler.advance(A)
        assert h.registry.get(A).touch_set == {"src/x.py"}

    @pytest.mark.asyncio
    async def test_early_phase_failure_fails_and_releases(self) -> None:
        h = Harness(worker=FakeWorker(failures={A: Phase.EXPLORING}))
        result = await h.scheduler.advance(A)

        assert not result.ok
        assert h.phase(A) is Phase.FAILED
        assert "exploring" in (h.registry.get(A).error or "")
        assert h.provider.released == [A]
        assert Phase.PLANNING not in h.worker.phases_of(A)

    @pytest.mark.asyncio
    async def test_implementing_failure_retains_workspace(self) -> None:
        h = Harness(worker=FakeWorker(failures={A: Phase.IMPLEMENTING}))
        result = await h.scheduler.advance(A)

        assert result.phase is Phase.FAILED
        assert A in h.scheduler.retained
        assert A in h.pool
        assert h.provider.released == []

    @pytest.mark.asyncio
    async def test_raised_phase_failure_fails_task(self) -> None:
        h = Harness()
        h.worker.raises[A] = Phase.PLANNING
        result = await h.scheduler.advance(A)

        assert result.phase is Phase.FAILED
        assert "planning crashed" in (result.error or "")
        assert h.worker.phases_of(A).count(Phase.PLANNING) == 1

    @pytest.mark.asyncio
    async def test_crashing_worker_fails_only_its_task(self) -> None:
        h = Harness(tasks=2)
        h.worker.crashes[A] = Phase.PLANNING
        results = await h.scheduler.advance_all([A, B])

        assert results[A].phase is Phase.FAILED
        assert results[A].error == "planning: RuntimeError: planning blew up"
        assert results[B].phase is Phase.APPROVED
        assert h.provider.released == [A]

    @pytest.mark.asyncio
    async def test_review_failure_blocks_instead_of_failing(self) -> None:
        h = Harness(worker=FakeWorker(failures={A: Phase.REVIEWING}))
        result = await h.scheduler.advance(A)

        assert result.phase is Phase.BLOCKED
        assert h.registry.get(A).review_verdict is ReviewVerdict.BLOCKED

    @pytest.mark.asyncio
    async def test_allocation_outage_fails_task(self) -> None:
        provider = FakeProvider()
        provider.make_unavailable("allocate", times=5)
        h = Harness(provider=provider)
        result = await h.scheduler.advance(A)

        assert result.phase is Phase.FAILED
        assert "workspace allocation failed" in (result.error or "")
        assert h.worker.calls == []

    @pytest.mark.asyncio
    async def test_transient_worker_outage_is_retried(self) -> None:
        h = Harness()
        h.worker.unavailable[(A, Phase.PLANNING)] = 2
        result = await h.scheduler.advance(A)

        assert result.ok
        assert h.worker.phases_of(A).count(Phase.PLANNING) == 3

    @pytest.mark.asyncio
    async def test_persistent_worker_outage_fails_phase(self) -> None:
        h = Harness()
        h.worker.unavailable[(A, Phase.PLANNING)] = 3
        result = await h.scheduler.advance(A)

        assert result.phase is Phase.FAILED
        assert "failed after 3 attempts" in (result.error or "")

    @pytest.mark.asyncio
    async def test_terminal_task_is_left_alone(self) -> None:
        h = Harness()
        h.registry.transition(A, Phase.ABORTED, error="gone")
        result = await h.scheduler.advance(A)
        assert result.phase is Phase.ABORTED
        assert h.provider.allocated == []

    @pytest.mark.asyncio
    async def test_advancing_twice_is_an_invalid_transition(self) -> None:
        h = Harness()
        await h.scheduler.advance(A)
        with pytest.raises(InvalidTransition):
            await h.scheduler.advance(A)

    def test_max_parallel_must_be_positive(self) -> None:
        registry = TaskRegistry()
        pool = WorkspacePool(FakeProvider(), baseline="main")
        with pytest.raises(ValueError):
            PhaseScheduler(registry, pool, FakeWorker(), max_parallel=0)


class TestReviewLoop:
    @pytest.mark.asyncio
    async def test_changes_requested_gets_one_automatic_retry(self) -> None:
        worker = FakeWorker(verdicts={A: [ReviewVerdict.CHANGES_REQUESTED, ReviewVerdict.APPROVED]})
        h = Harness(worker=worker)
        result = await h.scheduler.advance(A)

        assert result.phase is Phase.APPROVED
        assert h.worker.phases_of(A)[2:] == [
            Phase.IMPLEMENTING,
            Phase.REVIEWING,
            Phase.IMPLEMENTING,
            Phase.REVIEWING,
        ]
        assert h.registry.get(A).rework_count == 1

    @pytest.mark.asyncio
    async def test_second_changes_requested_escalates_to_blocked(self) -> None:
        worker = FakeWorker(
            verdicts={A: [ReviewVerdict.CHANGES_REQUESTED, ReviewVerdict.CHANGES_REQUESTED]}
        )
        h = Harness(worker=worker)
        result = await h.scheduler.advance(A)

        assert not result.ok
        assert result.phase is Phase.BLOCKED
        assert h.worker.phases_of(A).count(Phase.REVIEWING) == 2

    @pytest.mark.asyncio
    async def test_no_automatic_retry_when_disabled(self) -> None:
        worker = FakeWorker(verdicts={A: [ReviewVerdict.CHANGES_REQUESTED]})
        h = Harness(worker=worker, review_retries=0)
        result = await h.scheduler.advance(A)

        assert result.phase is Phase.BLOCKED
        assert h.worker.phases_of(A).count(Phase.IMPLEMENTING) == 1

    @pytest.mark.asyncio
    async def test_rework_moves_blocked_task_back_through_review(self) -> None:
        worker = FakeWorker(verdicts={A: [ReviewVerdict.BLOCKED, ReviewVerdict.APPROVED]})
        h = Harness(worker=worker)
        assert (await h.scheduler.advance(A)).phase is Phase.BLOCKED

        result = await h.scheduler.rework(A)
        assert result.ok
        assert result.phase is Phase.APPROVED
        assert h.registry.get(A).rework_count == 1
        assert h.provider.allocated == [A]

    @pytest.mark.asyncio
    async def test_rework_requires_a_stalled_task(self) -> None:
        h = Harness()
        await h.scheduler.advance(A)
        with pytest.raises(InvalidTransition):
            await h.scheduler.rework(A)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_start_never_allocates(self) -> None:
        h = Harness()
        h.cancelled.add(A)
        result = await h.scheduler.advance(A)

        assert result.phase is Phase.ABORTED
        assert result.error == CANCELLED
        assert h.provider.allocated == []

    @pytest.mark.asyncio
    async def test_in_flight_phase_completes_before_abort(self) -> None:
        h = Harness()
        started, gate = h.worker.gate(A)
        advancing = asyncio.create_task(h.scheduler.advance(A))

        await started.wait()
        h.cancelled.add(A)
        assert h.phase(A) is Phase.IMPLEMENTING
        gate.set()
        result = await advancing

        assert result.phase is Phase.ABORTED
        assert Phase.REVIEWING not in h.worker.phases_of(A)
        assert h.provider.released == [A]


class TestAdvanceAll:
    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self) -> None:
        h = Harness(tasks=5, max_parallel=2)
        results = await h.scheduler.advance_all(h.registry.ids())

        assert all(r.ok for r in results.values())
        assert h.worker.peak == 2

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_others(self) -> None:
        h = Harness(tasks=2, worker=FakeWorker(failures={A: Phase.PLANNING}))
        results = await h.scheduler.advance_all([A, B])

        assert results[A].phase is Phase.FAILED
        assert results[B].phase is Phase.APPROVED
