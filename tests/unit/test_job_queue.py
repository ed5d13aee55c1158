"""Tests for PriorityJobQueue: outcomes, superseding, cancellation and lane isolation."""

import asyncio

import pytest

from mailsync.application.services.job_queue import PriorityJobQueue
from mailsync.domain.entities.sync_job import SyncJob
from mailsync.domain.enums import JobPriority, ProviderType, SubmitOutcome, SyncScope, SyncType
from tests.fakes import NOW


def _job(provider_id: str, priority: JobPriority = JobPriority.NORMAL, n: int = 1) -> SyncJob:
    return SyncJob(
        job_id=f"{provider_id}:{n}",
        provider_id=provider_id,
        tenant_id="tenant-1",
        provider_type=ProviderType.GOOGLE,
        sync_type=SyncType.INCREMENTAL,
        priority=priority,
        scopes=(SyncScope.EMAIL,),
        cursors={SyncScope.EMAIL: "abc123"},
        enqueued_at=NOW,
    )


def test_one_job_per_provider(queue: PriorityJobQueue) -> None:
    assert queue.submit(_job("p1")) is SubmitOutcome.ACCEPTED
    assert queue.submit(_job("p1", n=2)) is SubmitOutcome.DUPLICATE
    assert queue.submit(_job("p1", JobPriority.LOW, n=3)) is SubmitOutcome.DUPLICATE
    assert queue.is_pending("p1")


@pytest.mark.asyncio
async def test_higher_priority_supersedes_queued_job(queue: PriorityJobQueue) -> None:
    low = _job("p1", JobPriority.LOW)
    high = _job("p1", JobPriority.HIGH, n=2)
    assert queue.submit(low) is SubmitOutcome.ACCEPTED
    assert queue.submit(high) is SubmitOutcome.SUPERSEDED
    assert queue.pending_job("p1") is high

    claimed = await queue.claim(JobPriority.HIGH)
    assert claimed is high
    # The stale low-lane entry is skipped; the lane then has nothing to hand out.
    with pytest.raises(TimeoutError):
        await asyncio.wait_for(queue.claim(JobPriority.LOW), timeout=0.05)


@pytest.mark.asyncio
async def test_running_provider_is_duplicate_until_released(queue: PriorityJobQueue) -> None:
    queue.submit(_job("p1", JobPriority.HIGH))
    job = await queue.claim(JobPriority.HIGH)
    assert queue.is_running("p1")
    assert queue.submit(_job("p1", JobPriority.HIGH, n=2)) is SubmitOutcome.DUPLICATE
    queue.release(job)
    assert queue.submit(_job("p1", JobPriority.HIGH, n=3)) is SubmitOutcome.ACCEPTED


def test_full_lane_reports_saturated(queue: PriorityJobQueue) -> None:
    capacity = queue.capacities[JobPriority.LOW]
    for i in range(capacity):
        assert queue.submit(_job(f"p{i}", JobPriority.LOW)) is SubmitOutcome.ACCEPTED
    assert queue.submit(_job("overflow", JobPriority.LOW)) is SubmitOutcome.SATURATED
    assert not queue.is_tracked("overflow")
    # Other lanes are unaffected by a saturated low lane.
    assert queue.submit(_job("urgent", JobPriority.HIGH)) is SubmitOutcome.ACCEPTED


@pytest.mark.asyncio
async def test_cancel_provider_drops_queued_job(queue: PriorityJobQueue) -> None:
    queue.submit(_job("p1"))
    assert queue.cancel_provider("p1") is True
    assert not queue.is_pending("p1")
    # Nothing was running, so nothing stays flagged.
    assert not queue.is_cancelled("p1")
    assert queue.cancel_provider("p1") is False


@pytest.mark.asyncio
async def test_cancel_flags_running_job_until_released(queue: PriorityJobQueue) -> None:
    queue.submit(_job("p1"))
    job = await queue.claim(JobPriority.NORMAL)

    assert queue.cancel_provider("p1") is True
    assert queue.is_cancelled("p1")
    assert queue.submit(_job("p1", n=2)) is SubmitOutcome.CANCELLED

    queue.release(job)
    assert not queue.is_cancelled("p1")
    assert queue.submit(_job("p1", n=3)) is SubmitOutcome.ACCEPTED


def test_cancelling_untracked_providers_keeps_no_state(queue: PriorityJobQueue) -> None:
    for i in range(1000):
        assert queue.cancel_provider(f"gone-{i}") is False
    assert not any(queue.is_cancelled(f"gone-{i}") for i in range(1000))
    assert queue.submit(_job("gone-1")) is SubmitOutcome.ACCEPTED


@pytest.mark.asyncio
async def test_restore_clears_running_cancellation(queue: PriorityJobQueue) -> None:
    queue.submit(_job("p1"))
    await queue.claim(JobPriority.NORMAL)
    queue.cancel_provider("p1")
    queue.restore("p1")
    assert not queue.is_cancelled("p1")


@pytest.mark.asyncio
async def test_high_lane_is_not_delayed_by_low_lane_depth(queue: PriorityJobQueue) -> None:
    """Saturating the low lane leaves the high lane's claim immediate."""
    for i in range(queue.capacities[JobPriority.LOW]):
        queue.submit(_job(f"low-{i}", JobPriority.LOW))
    queue.submit(_job("vip", JobPriority.HIGH))
    job = await asyncio.wait_for(queue.claim(JobPriority.HIGH), timeout=0.1)
    assert job.provider_id == "vip"


def test_stats_count_queued_and_running(queue: PriorityJobQueue) -> None:
    queue.submit(_job("a", JobPriority.HIGH))
    queue.submit(_job("b", JobPriority.LOW))
    stats = {s.lane: s for s in queue.stats()}
    assert stats[JobPriority.HIGH].queued == 1
    assert stats[JobPriority.LOW].queued == 1
    assert stats[JobPriority.NORMAL].queued == 0
    assert stats[JobPriority.HIGH].workers == queue.workers[JobPriority.HIGH]
