"""Three-lane priority job queue.

Each lane is a bounded asyncio.Queue drained by its own workers. The
queue tracks at most one queued or running job per provider; a job
replaced by a higher-priority submission stays in its old lane as a stale
entry and is skipped when claimed.
"""

from __future__ import annotations

import asyncio

from mailsync.application.dtos.sync import LaneStats
from mailsync.core.config import Settings, get_settings
from mailsync.domain.entities.sync_job import SyncJob
from mailsync.domain.enums import JobPriority, SubmitOutcome
from mailsync.shared.telemetry.logging import get_logger

logger = get_logger(__name__)


class PriorityJobQueue:
    """Bounded per-lane FIFO queues with per-provider de-duplication."""

    def __init__(self, settings: Settings | None = None) -> None:
        s = settings or get_settings()
        self.capacities = {
            JobPriority.HIGH: s.lane_capacity_high,
            JobPriority.NORMAL: s.lane_capacity_normal,
            JobPriority.LOW: s.lane_capacity_low,
        }
        self.workers = {
            JobPriority.HIGH: s.lane_workers_high,
            JobPriority.NORMAL: s.lane_workers_normal,
            JobPriority.LOW: s.lane_workers_low,
        }
        self._lanes: dict[JobPriority, asyncio.Queue[SyncJob]] = {
            lane: asyncio.Queue(maxsize=cap) for lane, cap in self.capacities.items()
        }
        self._pending: dict[str, SyncJob] = {}
        self._running: dict[str, SyncJob] = {}
        self._cancelled: set[str] = set()

    def submit(self, job: SyncJob) -> SubmitOutcome:
        """Offer job to its lane without blocking.

        Returns:
            ACCEPTED, SUPERSEDED (replaced a queued lower-priority job),
            DUPLICATE (provider queued at equal/higher priority or running),
            SATURATED (lane full; caller reschedules) or CANCELLED.
        """
        pid = job.provider_id
        if pid in self._cancelled:
            return SubmitOutcome.CANCELLED
        if pid in self._running:
            return SubmitOutcome.DUPLICATE
        existing = self._pending.get(pid)
        if existing is not None and existing.priority.rank <= job.priority.rank:
            return SubmitOutcome.DUPLICATE
        try:
            self._lanes[job.priority].put_nowait(job)
        except asyncio.QueueFull:
            logger.warning("Lane %s saturated, dropping job for %s", job.priority.value, pid)
            return SubmitOutcome.SATURATED
        self._pending[pid] = job
        if existing is not None:
            logger.debug(
                "Job %s supersedes %s (%s -> %s)",
                job.job_id,
                existing.job_id,
                existing.priority.value,
                job.priority.value,
            )
            return SubmitOutcome.SUPERSEDED
        return SubmitOutcome.ACCEPTED

    async def claim(self, lane: JobPriority) -> SyncJob:
        """Wait for the next live job of lane and mark its provider running."""
        queue = self._lanes[lane]
        while True:
            job = await queue.get()
            queue.task_done()
            if self._pending.get(job.provider_id) is not job:
                continue
            del self._pending[job.provider_id]
            self._running[job.provider_id] = job
            return job

    def release(self, job: SyncJob) -> None:
        """Forget a finished job so its provider can be queued again."""
        if self._running.get(job.provider_id) is job:
            del self._running[job.provider_id]
            self._cancelled.discard(job.provider_id)

    def cancel_provider(self, provider_id: str) -> bool:
        """Drop the provider's queued job and flag its running one.

        Returns True when a queued or running job was affected. The flag is
        kept only while a job runs and clears when that job is released; until
        then further submissions for provider_id are refused.
        """
        dropped = self._pending.pop(provider_id, None) is not None
        running = provider_id in self._running
        if running:
            self._cancelled.add(provider_id)
        else:
            self._cancelled.discard(provider_id)
        if dropped or running:
            logger.info(
                "Cancelled jobs for provider %s (queued=%s running=%s)",
                provider_id,
                dropped,
                running,
            )
        return dropped or running

    def restore(self, provider_id: str) -> None:
        """Accept submissions for provider_id again (reconnected under the same id)."""
        self._cancelled.discard(provider_id)

    def is_cancelled(self, provider_id: str) -> bool:
        return provider_id in self._cancelled

    def is_running(self, provider_id: str) -> bool:
        return provider_id in self._running

    def is_pending(self, provider_id: str) -> bool:
        return provider_id in self._pending

    def is_tracked(self, provider_id: str) -> bool:
        return provider_id in self._pending or provider_id in self._running

    def pending_job(self, provider_id: str) -> SyncJob | None:
        return self._pending.get(provider_id)

    def stats(self) -> list[LaneStats]:
        queued = dict.fromkeys(JobPriority, 0)
        running = dict.fromkeys(JobPriority, 0)
        for job in self._pending.values():
            queued[job.priority] += 1
        for job in self._running.values():
            running[job.priority] += 1
        return [
            LaneStats(
                lane=lane,
                workers=self.workers[lane],
                capacity=self.capacities[lane],
                queued=queued[lane],
                running=running[lane],
            )
            for lane in JobPriority
        ]
