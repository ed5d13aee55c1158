"""Fixed-size worker pool draining the three queue lanes."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import TYPE_CHECKING

from mailsync.application.dtos.sync import DeadLetterEntry
from mailsync.application.services.job_queue import PriorityJobQueue
from mailsync.core.config import Settings, get_settings
from mailsync.domain.entities.sync_job import SyncJob, SyncResult
from mailsync.domain.enums import ErrorCategory, JobPriority
from mailsync.shared.telemetry.logging import get_logger
from mailsync.shared.utils.datetime import Clock, utc_now

if TYPE_CHECKING:
    from mailsync.application.services.sync_executor import SyncExecutor

logger = get_logger(__name__)


class WorkerPool:
    """Spawns lane_workers_<lane> stateless workers per lane.

    A worker survives any exception raised while running a job; jobs that
    end in a permanent failure, a job timeout or a crash are kept in a
    bounded dead-letter buffer for inspection.
    """

    def __init__(
        self,
        queue: PriorityJobQueue,
        executor: SyncExecutor,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.queue = queue
        self.executor = executor
        self.settings = settings or get_settings()
        self.clock = clock
        self._tasks: list[asyncio.Task[None]] = []
        self._dead_letters: deque[DeadLetterEntry] = deque(
            maxlen=self.settings.dead_letter_buffer_size
        )

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def dead_letters(self) -> list[DeadLetterEntry]:
        return list(self._dead_letters)

    def start(self) -> None:
        if self._tasks:
            return
        for lane in JobPriority:
            for index in range(self.queue.workers[lane]):
                self._tasks.append(
                    asyncio.create_task(
                        self._work(lane), name=f"sync-worker-{lane.value}-{index}"
                    )
                )
        logger.info(
            "Worker pool started: %s",
            ", ".join(f"{lane.value}={self.queue.workers[lane]}" for lane in JobPriority),
        )

    async def stop(self) -> None:
        """Cancel all workers and wait for them to finish."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Worker pool stopped (%d workers)", len(tasks))

    async def _work(self, lane: JobPriority) -> None:
        while True:
            job = await self.queue.claim(lane)
            try:
                result = await self.executor.execute(job)
            except Exception as e:
                logger.exception("Sync job %s crashed", job.job_id)
                self._dead_letter(job, f"crashed: {type(e).__name__}: {e}")
            else:
                self._inspect(job, result)
            finally:
                self.queue.release(job)

    def _inspect(self, job: SyncJob, result: SyncResult) -> None:
        if result.timed_out:
            self._dead_letter(job, "job timed out")
        elif result.error is not None and result.error.category is ErrorCategory.PERMANENT:
            self._dead_letter(job, result.error.describe())

    def _dead_letter(self, job: SyncJob, reason: str) -> None:
        self._dead_letters.append(
            DeadLetterEntry(
                job_id=job.job_id,
                provider_id=job.provider_id,
                priority=job.priority,
                reason=reason[:500],
                failed_at=self.clock(),
            )
        )
