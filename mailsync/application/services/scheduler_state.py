"""Repository-backed scheduler state store.

Every transition loads a fresh ProviderConfig, mutates it and saves it
while holding a per-provider lock, so the scheduler, manual triggers and
workers never overwrite each other's state within one process.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import timedelta

from mailsync.application.interfaces.repositories import IProviderConfigRepository
from mailsync.application.services.sync_policy import CadencePolicy
from mailsync.domain.entities.classified_error import ClassifiedError
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.entities.sync_job import SyncResult
from mailsync.domain.enums import SyncState
from mailsync.shared.telemetry.logging import get_logger
from mailsync.shared.utils.datetime import Clock, utc_now

logger = get_logger(__name__)


class SchedulerStateStore:
    """Explicit scheduling-state transitions for one provider at a time."""

    def __init__(
        self,
        repo: IProviderConfigRepository,
        policy: CadencePolicy,
        clock: Clock = utc_now,
    ) -> None:
        self.repo = repo
        self.policy = policy
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._resync_requested: set[str] = set()

    def _lock_for(self, provider_id: str) -> asyncio.Lock:
        lock = self._locks.get(provider_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[provider_id] = lock
        return lock

    def forget(self, provider_id: str) -> None:
        self._locks.pop(provider_id, None)
        self._resync_requested.discard(provider_id)

    def request_resync(self, provider_id: str) -> None:
        """Make the running job's success schedule the next sync immediately."""
        self._resync_requested.add(provider_id)

    async def _mutate(
        self,
        provider_id: str,
        change: Callable[[ProviderConfig], bool],
    ) -> ProviderConfig | None:
        """Load, apply change, save when change returns True.

        Returns the config after the change, or None when the provider is
        gone or change declined it.
        """
        async with self._lock_for(provider_id):
            config = await self.repo.get_provider_config(provider_id)
            if config is None:
                return None
            if not change(config):
                return None
            config.updated_at = self.clock()
            return await self.repo.save_provider_config(config)

    @staticmethod
    def _ensure_running(config: ProviderConfig) -> None:
        """Walk config to RUNNING through ENQUEUED when a step was skipped."""
        if config.sync_state is SyncState.RUNNING:
            return
        if config.sync_state is not SyncState.ENQUEUED:
            config.transition_to(SyncState.ENQUEUED)
        config.transition_to(SyncState.RUNNING)

    @staticmethod
    def _merge_cursors(config: ProviderConfig, cursors: dict[str, str] | None) -> None:
        if cursors:
            config.sync_cursors = {**config.sync_cursors, **cursors}

    @staticmethod
    def _settle(config: ProviderConfig) -> bool:
        """Whether a finished job may still update config (not revoked meanwhile)."""
        return config.is_active and config.sync_state is not SyncState.DISABLED

    async def mark_due(
        self, provider_id: str, retry_in: timedelta | None = None
    ) -> ProviderConfig | None:
        """Mark provider due (e.g. its lane was saturated); next_sync_at = now + retry_in."""
        now = self.clock()

        def change(config: ProviderConfig) -> bool:
            if not self._settle(config) or config.sync_state is SyncState.RUNNING:
                return False
            config.transition_to(SyncState.DUE)
            if retry_in is not None:
                config.next_sync_at = now + retry_in
            return True

        return await self._mutate(provider_id, change)

    async def mark_enqueued(self, provider_id: str) -> ProviderConfig | None:
        """Record that a job for provider is (about to be) queued.

        Returns None when the provider is disabled, gone or already running.
        """

        def change(config: ProviderConfig) -> bool:
            if not self._settle(config) or config.sync_state is SyncState.RUNNING:
                return False
            config.transition_to(SyncState.ENQUEUED)
            return True

        return await self._mutate(provider_id, change)

    async def mark_running(self, provider_id: str) -> ProviderConfig | None:
        """Enter RUNNING; None when the provider was removed or disabled since enqueue."""

        def change(config: ProviderConfig) -> bool:
            if not self._settle(config):
                return False
            self._ensure_running(config)
            return True

        return await self._mutate(provider_id, change)

    async def release(self, provider_id: str) -> ProviderConfig | None:
        """Return a provider whose queued job never ran (cancelled, dropped) to IDLE."""

        def change(config: ProviderConfig) -> bool:
            if config.sync_state not in (SyncState.ENQUEUED, SyncState.RUNNING):
                return False
            if config.sync_state is SyncState.RUNNING:
                config.transition_to(SyncState.DUE)
            else:
                config.transition_to(SyncState.IDLE)
            return True

        return await self._mutate(provider_id, change)

    async def record_success(self, provider_id: str, result: SyncResult) -> ProviderConfig | None:
        """Reset streaks, advance cursors and schedule by the activity tier."""
        now = self.clock()

        def change(config: ProviderConfig) -> bool:
            if not self._settle(config):
                return False
            self._ensure_running(config)
            self.policy.update_activity(config, result, now)
            self._merge_cursors(config, result.next_cursors)
            config.error_streak = 0
            config.rate_limit_streak = 0
            config.last_synced_at = now
            config.last_error = None
            config.last_error_at = None
            config.transition_to(SyncState.IDLE)
            config.next_sync_at = self.policy.next_sync_at(config, now)
            if provider_id in self._resync_requested:
                self._resync_requested.discard(provider_id)
                config.next_sync_at = now
            return True

        return await self._mutate(provider_id, change)

    async def record_failure(
        self,
        provider_id: str,
        error: ClassifiedError,
        cursors: dict[str, str] | None = None,
    ) -> ProviderConfig | None:
        """Exhausted transient failure: error_streak += 1 and back off."""
        now = self.clock()

        def change(config: ProviderConfig) -> bool:
            if not self._settle(config):
                return False
            self._ensure_running(config)
            self._merge_cursors(config, cursors)
            config.error_streak += 1
            config.last_error = error.describe()
            config.last_error_at = now
            config.transition_to(SyncState.BACKOFF)
            config.next_sync_at = now + self.policy.failure_delay(config, error, now)
            return True

        saved = await self._mutate(provider_id, change)
        if saved is not None:
            logger.warning(
                "Provider %s backing off (error_streak=%d) until %s: %s",
                provider_id,
                saved.error_streak,
                saved.next_sync_at,
                error.describe(),
            )
        return saved

    async def record_rate_limited(
        self,
        provider_id: str,
        error: ClassifiedError,
        cursors: dict[str, str] | None = None,
    ) -> ProviderConfig | None:
        """Throttled: error_streak untouched, next_sync_at = now + retry_after."""
        now = self.clock()

        def change(config: ProviderConfig) -> bool:
            if not self._settle(config):
                return False
            self._ensure_running(config)
            self._merge_cursors(config, cursors)
            config.rate_limit_streak += 1
            config.last_error = error.describe()
            config.last_error_at = now
            config.transition_to(SyncState.BACKOFF)
            config.next_sync_at = now + self.policy.rate_limited_delay(
                error, config.rate_limit_streak
            )
            return True

        saved = await self._mutate(provider_id, change)
        if saved is not None:
            logger.info(
                "Provider %s rate limited, next sync at %s", provider_id, saved.next_sync_at
            )
        return saved

    async def record_permanent_failure(
        self,
        provider_id: str,
        error: ClassifiedError,
        cursors: dict[str, str] | None = None,
    ) -> ProviderConfig | None:
        """Job dropped; error_streak untouched and the natural interval applies."""
        now = self.clock()

        def change(config: ProviderConfig) -> bool:
            if not self._settle(config):
                return False
            self._ensure_running(config)
            self._merge_cursors(config, cursors)
            config.last_error = error.describe()
            config.last_error_at = now
            config.transition_to(SyncState.IDLE)
            config.next_sync_at = self.policy.next_sync_at(config, now)
            return True

        saved = await self._mutate(provider_id, change)
        if saved is not None:
            logger.error("Provider %s sync failed permanently: %s", provider_id, error.describe())
        return saved

    async def record_auth_revoked(self, provider_id: str, reason: str) -> ProviderConfig | None:
        """Disable provider until reconnect. Idempotent when already disabled."""
        now = self.clock()

        def change(config: ProviderConfig) -> bool:
            if not config.is_active and config.sync_state is SyncState.DISABLED:
                return False
            config.deactivate(reason, now)
            return True

        return await self._mutate(provider_id, change)
