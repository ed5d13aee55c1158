"""Periodic scheduler: turns due providers into SyncJobs.

The driver only enqueues; it never runs a sync itself. Passes never
overlap: a pass that starts while another is still running returns
immediately.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from mailsync.application.interfaces.repositories import IProviderConfigRepository
from mailsync.application.services.job_queue import PriorityJobQueue
from mailsync.application.services.scheduler_state import SchedulerStateStore
from mailsync.application.services.sync_policy import CadencePolicy
from mailsync.core.config import Settings, get_settings
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.entities.sync_job import SyncJob
from mailsync.domain.enums import JobPriority, SubmitOutcome, SyncState, SyncType
from mailsync.shared.telemetry.logging import get_logger
from mailsync.shared.telemetry.tracing import TracedOperation
from mailsync.shared.utils.datetime import Clock, utc_now
from mailsync.shared.utils.generators import generate_job_id

logger = get_logger(__name__)


class SyncScheduler:
    """Loads due providers and submits one job per provider."""

    def __init__(
        self,
        repo: IProviderConfigRepository,
        queue: PriorityJobQueue,
        state: SchedulerStateStore,
        policy: CadencePolicy,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.repo = repo
        self.queue = queue
        self.state = state
        self.policy = policy
        self.settings = settings or get_settings()
        self.clock = clock
        self._pass_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def build_job(
        self,
        config: ProviderConfig,
        now: datetime,
        *,
        priority: JobPriority | None = None,
        force_full: bool = False,
    ) -> SyncJob:
        """Build the job for config: scopes, lane, sync type and per-scope cursors."""
        scopes = self.policy.scopes_for(config)
        sync_type = self.policy.sync_type_for(config, now, force_full=force_full)
        cursors = {
            scope: (config.cursor_for(scope) if sync_type is SyncType.INCREMENTAL else None)
            for scope in scopes
        }
        return SyncJob(
            job_id=generate_job_id(config.id),
            provider_id=config.id,
            tenant_id=config.tenant_id,
            provider_type=config.provider_type,
            sync_type=sync_type,
            priority=priority or self.policy.lane_for(config, scopes, now),
            scopes=scopes,
            cursors=cursors,
            enqueued_at=now,
        )

    async def enqueue(self, job: SyncJob) -> SubmitOutcome:
        """Persist ENQUEUED, submit, and undo the state when the queue refused the job."""
        marked = await self.state.mark_enqueued(job.provider_id)
        if marked is None:
            return (
                SubmitOutcome.DUPLICATE
                if self.queue.is_running(job.provider_id)
                else SubmitOutcome.CANCELLED
            )
        outcome = self.queue.submit(job)
        if outcome is SubmitOutcome.SATURATED:
            await self.state.mark_due(
                job.provider_id,
                retry_in=timedelta(seconds=self.settings.scheduler_poll_interval_seconds),
            )
        elif outcome is SubmitOutcome.CANCELLED:
            await self.state.release(job.provider_id)
        return outcome

    async def run_once(self) -> int:
        """One scheduling pass. Returns the number of jobs enqueued."""
        if self._pass_lock.locked():
            logger.debug("Scheduler pass already in progress, skipping")
            return 0
        async with self._pass_lock:
            now = self.clock()
            async with TracedOperation(
                "scheduler.pass", {"limit": self.settings.scheduler_batch_size}
            ) as op:
                due = await self.repo.load_due_providers(now, self.settings.scheduler_batch_size)
                submitted = 0
                for config in due:
                    if not config.is_schedulable() or self.queue.is_tracked(config.id):
                        continue
                    if config.sync_state in (SyncState.ENQUEUED, SyncState.RUNNING):
                        # Left behind by a stopped process; nothing holds this job.
                        await self.state.release(config.id)
                    job = self.build_job(config, now)
                    outcome = await self.enqueue(job)
                    if outcome.enqueued:
                        submitted += 1
                op.set_attribute("count", submitted)
            if due:
                logger.info("Scheduler pass: %d due, %d enqueued", len(due), submitted)
            return submitted

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduler pass failed")
            await asyncio.sleep(self.settings.scheduler_poll_interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="sync-scheduler")
        logger.info(
            "Scheduler started (every %gs, batch %d)",
            self.settings.scheduler_poll_interval_seconds,
            self.settings.scheduler_batch_size,
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Scheduler stopped")
