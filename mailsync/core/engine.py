"""Sync engine facade: wires the scheduler, queue, workers and token manager.

Collaborators that touch the outside world (repositories, vault, token
refresher, adapter factory) are injected; build_sync_engine in
mailsync.core.lifespan supplies the production ones.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, time
from typing import Any

from mailsync.application.dtos.sync import (
    DeadLetterEntry,
    ProviderHealth,
    SyncStats,
    TriggerSyncResult,
)
from mailsync.application.interfaces.repositories import (
    IProviderConfigRepository,
    ISyncedItemRepository,
)
from mailsync.application.interfaces.services import (
    AdapterFactory,
    ErrorClassifier,
    ICredentialVault,
    ITokenRefresher,
)
from mailsync.application.services.adapter_invoker import invoke_adapter
from mailsync.application.services.job_queue import PriorityJobQueue
from mailsync.application.services.provider_connection_service import (
    ProviderConnectionService,
)
from mailsync.application.services.scheduler_state import SchedulerStateStore
from mailsync.application.services.sync_executor import SyncExecutor
from mailsync.application.services.sync_policy import CadencePolicy
from mailsync.application.services.sync_scheduler import SyncScheduler
from mailsync.application.services.token_lifecycle_manager import TokenLifecycleManager
from mailsync.application.services.worker_pool import WorkerPool
from mailsync.core.config import Settings, get_settings
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.enums import JobPriority, ProviderHealthStatus, SubmitOutcome, SyncState
from mailsync.domain.exceptions import (
    AuthRevokedException,
    ProviderCredentialError,
    ProviderInactiveException,
    ProviderNotFoundException,
)
from mailsync.shared.telemetry.logging import get_logger
from mailsync.shared.telemetry.tracing import traced
from mailsync.shared.utils.datetime import Clock, utc_now

logger = get_logger(__name__)


class SyncEngine:
    """Entry point for the host application.

    start() launches the worker pool and the scheduler loop; stop() cancels
    both. trigger_sync, notify_change and get_provider_health are safe to
    call while the engine runs.
    """

    def __init__(
        self,
        repo: IProviderConfigRepository,
        items: ISyncedItemRepository,
        vault: ICredentialVault,
        refresher: ITokenRefresher,
        adapter_factory: AdapterFactory,
        classify: ErrorClassifier,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.repo = repo
        self.clock = clock
        self.classify = classify
        self.adapter_factory = adapter_factory
        self.policy = CadencePolicy(self.settings)
        self.queue = PriorityJobQueue(self.settings)
        self.state = SchedulerStateStore(repo, self.policy, clock)
        self.tokens = TokenLifecycleManager(
            repo, vault, refresher, classify, self.settings, clock
        )
        self.executor = SyncExecutor(
            items,
            self.tokens,
            adapter_factory,
            self.state,
            self.queue,
            classify,
            self.settings,
            sleep,
        )
        self.workers = WorkerPool(self.queue, self.executor, self.settings, clock)
        self.scheduler = SyncScheduler(
            repo, self.queue, self.state, self.policy, self.settings, clock
        )
        self.connections = ProviderConnectionService(
            repo, self.tokens, adapter_factory, self.queue, self.state, self.settings, clock
        )

    @property
    def running(self) -> bool:
        return self.workers.running

    @property
    def dead_letters(self) -> list[DeadLetterEntry]:
        return self.workers.dead_letters

    def start(self, *, schedule: bool = True) -> None:
        """Start workers and, unless schedule is False, the periodic scheduler."""
        self.workers.start()
        if schedule:
            self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.workers.stop()

    async def run_scheduler_pass(self) -> int:
        """Run one scheduling pass now. Returns the number of jobs enqueued."""
        return await self.scheduler.run_once()

    @traced("engine.trigger_sync")
    async def trigger_sync(self, provider_id: str, *, full: bool = False) -> TriggerSyncResult:
        """Enqueue a sync for provider_id at high priority.

        A job already queued at lower priority is superseded; a running or
        equally prioritized job makes this a duplicate.

        Raises:
            ProviderNotFoundException: Unknown provider_id.
            ProviderInactiveException: Provider is disabled and needs reconnection.
        """
        config = await self.repo.get_provider_config(provider_id)
        if config is None:
            raise ProviderNotFoundException(provider_id)
        if not config.is_schedulable():
            raise ProviderInactiveException(provider_id)
        job = self.scheduler.build_job(
            config, self.clock(), priority=JobPriority.HIGH, force_full=full
        )
        outcome = await self.scheduler.enqueue(job)
        logger.info(
            "Manual sync for provider %s: %s (%s)",
            provider_id,
            outcome.value,
            job.sync_type.value,
        )
        return TriggerSyncResult(
            provider_id=provider_id,
            outcome=outcome,
            job_id=job.job_id if outcome.enqueued else None,
            sync_type=job.sync_type,
        )

    @traced("engine.notify_change")
    async def notify_change(self, provider_id: str) -> TriggerSyncResult:
        """Sync provider_id soon because a push notification reported new data.

        Called from push handlers such as Gmail watch or Graph subscriptions.
        The job goes to the normal lane unless the provider's own lane is
        higher. When a job is already running, its success schedules the next
        sync immediately instead, so changes that arrived mid-sync are not
        left for the natural interval.

        Raises:
            ProviderNotFoundException: Unknown provider_id.
            ProviderInactiveException: Provider is disabled and needs reconnection.
        """
        config = await self.repo.get_provider_config(provider_id)
        if config is None:
            raise ProviderNotFoundException(provider_id)
        if not config.is_schedulable():
            raise ProviderInactiveException(provider_id)
        now = self.clock()
        lane = self.policy.lane_for(config, self.policy.scopes_for(config), now)
        priority = lane if lane.rank < JobPriority.NORMAL.rank else JobPriority.NORMAL
        job = self.scheduler.build_job(config, now, priority=priority)
        outcome = await self.scheduler.enqueue(job)
        if outcome is SubmitOutcome.DUPLICATE and self.queue.is_running(provider_id):
            self.state.request_resync(provider_id)
        logger.info("Change notification for provider %s: %s", provider_id, outcome.value)
        return TriggerSyncResult(
            provider_id=provider_id,
            outcome=outcome,
            job_id=job.job_id if outcome.enqueued else None,
            sync_type=job.sync_type,
        )

    def _status(self, config: ProviderConfig) -> ProviderHealthStatus:
        if (
            not config.is_active
            or config.sync_state is SyncState.DISABLED
            or not config.has_access_credential()
        ):
            return ProviderHealthStatus.NEEDS_RECONNECTION
        if self.queue.is_running(config.id) or self.queue.is_pending(config.id):
            return ProviderHealthStatus.SYNCING
        if config.error_streak >= self.settings.error_badge_threshold:
            return ProviderHealthStatus.ERROR
        if (
            config.error_streak > 0
            or config.rate_limit_streak > 0
            or config.sync_state is SyncState.BACKOFF
        ):
            return ProviderHealthStatus.BACKOFF
        if config.last_synced_at is None:
            return ProviderHealthStatus.PENDING
        return ProviderHealthStatus.HEALTHY

    async def get_provider_health(
        self, provider_id: str, *, check_connection: bool = False
    ) -> ProviderHealth:
        """Presentation status for one provider.

        With check_connection the adapter's test_connection runs under the
        health-check timeout; a revoked credential found this way disables
        the provider before the status is computed.

        Raises:
            ProviderNotFoundException: Unknown provider_id.
        """
        config = await self.repo.get_provider_config(provider_id)
        if config is None:
            raise ProviderNotFoundException(provider_id)
        connection_ok: bool | None = None
        if check_connection and config.is_active:
            connection_ok = await self._check_connection(config)
            config = await self.repo.get_provider_config(provider_id) or config
        return ProviderHealth(
            provider_id=provider_id,
            status=self._status(config),
            is_active=config.is_active,
            last_synced_at=config.last_synced_at,
            next_sync_at=config.next_sync_at,
            error_streak=config.error_streak,
            show_error_badge=config.error_streak >= self.settings.error_badge_threshold,
            last_error=config.last_error,
            connection_ok=connection_ok,
        )

    async def _check_connection(self, config: ProviderConfig) -> bool:
        try:
            credential = await self.tokens.get_valid_access_token(config.id)
        except AuthRevokedException as e:
            logger.info("Health check for %s: %s", config.id, e.reason)
            return False
        except ProviderCredentialError as e:
            logger.info("Health check for %s: %s", config.id, e.classified.describe())
            return False
        adapter = self.adapter_factory(config, credential)
        try:
            result = await invoke_adapter(
                adapter.test_connection,
                self.classify,
                self.settings.health_check_timeout_seconds,
            )
        finally:
            await adapter.aclose()
        if not result.ok:
            logger.info("Health check for %s failed: %s", config.id, result.error.describe())
            return False
        return bool(result.value)

    async def get_sync_stats(self) -> SyncStats:
        """Lane depths, provider aggregates (synced_since = today, UTC) and dead letters."""
        now = self.clock()
        start_of_day = datetime.combine(now.date(), time.min, tzinfo=UTC)
        providers = await self.repo.get_statistics(start_of_day)
        return SyncStats(
            lanes=self.queue.stats(),
            providers=providers,
            dead_letters=len(self.workers.dead_letters),
            scheduler_running=self.scheduler.running,
        )

    async def remove_provider(self, provider_id: str) -> bool:
        """Disconnect provider_id: cancel its jobs and hard-delete it."""
        return await self.connections.disconnect_provider(provider_id)
