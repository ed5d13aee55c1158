"""Adaptive sync cadence: activity tiers, backoff, lanes and sync type."""

from __future__ import annotations

from datetime import datetime, timedelta

from mailsync.core.config import Settings, get_settings
from mailsync.domain.entities.classified_error import ClassifiedError
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.entities.sync_job import SyncResult
from mailsync.domain.enums import JobPriority, SyncScope, SyncType
from mailsync.shared.utils.datetime import ensure_utc

# Minimum items/hour for tiers 1..4; anything slower is tier 5.
ACTIVITY_THRESHOLDS: tuple[float, ...] = (4.0, 2.0, 0.5, 0.1)
_TIER_RANK = {1: 0, 2: 1, 3: 1, 4: 2, 5: 2}
_DEFAULT_SCOPE_ORDER = (SyncScope.EMAIL, SyncScope.CALENDAR, SyncScope.CONTACTS)
# Shortest window an activity sample is averaged over (hours).
_MIN_SAMPLE_HOURS = 0.1


class CadencePolicy:
    """Pure scheduling math over ProviderConfig; holds no state of its own."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    @property
    def max_interval(self) -> timedelta:
        return timedelta(minutes=self.settings.sync_max_interval_minutes)

    @staticmethod
    def priority_for_rate(rate: float) -> int:
        """Activity tier (1 = busiest) for an items-per-hour rate."""
        for tier, threshold in enumerate(ACTIVITY_THRESHOLDS, start=1):
            if rate >= threshold:
                return tier
        return len(ACTIVITY_THRESHOLDS) + 1

    def update_activity(self, config: ProviderConfig, result: SyncResult, now: datetime) -> None:
        """Fold an incremental sync's new-item count into the activity EMA and tier.

        Full syncs import backlog, not fresh activity, so they leave the rate
        and the tier as they were.
        """
        incremental = [
            r for r in result.scopes.values() if r.sync_type is SyncType.INCREMENTAL
        ]
        last = ensure_utc(config.last_synced_at)
        if not incremental or last is None:
            return
        new_items = sum(r.new_items for r in incremental)
        if new_items:
            config.last_activity_at = now
        hours = max((now - last).total_seconds() / 3600, _MIN_SAMPLE_HOURS)
        weight = self.settings.activity_ema_weight
        sample = new_items / hours
        config.avg_activity_rate = round(
            weight * sample + (1 - weight) * config.avg_activity_rate, 4
        )
        config.sync_priority = self.priority_for_rate(config.avg_activity_rate)

    def recently_active(self, config: ProviderConfig, now: datetime) -> bool:
        last = ensure_utc(config.last_activity_at)
        if last is None:
            return False
        return now - last <= timedelta(minutes=self.settings.recent_activity_window_minutes)

    def cadence_tier(self, config: ProviderConfig, now: datetime) -> int:
        """Stored tier, promoted one step when the mailbox was active within the window."""
        tier = config.sync_priority
        if self.recently_active(config, now):
            tier -= 1
        return max(1, min(5, tier))

    def lane_tier(self, config: ProviderConfig, now: datetime) -> int:
        """Cadence tier, demoted one step while the error streak is at the threshold."""
        tier = self.cadence_tier(config, now)
        if config.error_streak >= self.settings.error_streak_demotion_threshold:
            tier += 1
        return max(1, min(5, tier))

    def base_interval(self, config: ProviderConfig, now: datetime) -> timedelta:
        minutes = self.settings.tier_intervals_minutes[self.cadence_tier(config, now)]
        return timedelta(minutes=minutes)

    def backoff_delay(self, base: timedelta, error_streak: int) -> timedelta:
        """min(base * 2**error_streak, max_interval); monotonic in error_streak."""
        exponent = min(max(error_streak, 0), 30)
        seconds = base.total_seconds() * (2**exponent)
        return timedelta(seconds=min(seconds, self.max_interval.total_seconds()))

    def next_sync_at(self, config: ProviderConfig, now: datetime) -> datetime:
        return now + self.backoff_delay(self.base_interval(config, now), config.error_streak)

    def failure_delay(
        self, config: ProviderConfig, error: ClassifiedError, now: datetime
    ) -> timedelta:
        """Retry hint when the provider gave one, else exponential backoff on the streak."""
        if error.retry_after is not None:
            return min(error.retry_after, self.max_interval)
        return self.backoff_delay(self.base_interval(config, now), config.error_streak)

    def rate_limited_delay(self, error: ClassifiedError, rate_limit_streak: int) -> timedelta:
        """Provider's retry_after, else exponential from the default backoff."""
        if error.retry_after is not None:
            return min(error.retry_after, self.max_interval)
        base = timedelta(seconds=self.settings.rate_limit_default_backoff_seconds)
        return self.backoff_delay(base, max(rate_limit_streak - 1, 0))

    def scopes_for(self, config: ProviderConfig) -> tuple[SyncScope, ...]:
        """Capabilities of config in the configured priority order."""
        ordered = [SyncScope.parse(name) for name in self.settings.capability_order]
        ordered += [s for s in _DEFAULT_SCOPE_ORDER if s not in ordered]
        return tuple(s for s in ordered if config.supports(s))

    def lane_for(
        self, config: ProviderConfig, scopes: tuple[SyncScope, ...], now: datetime
    ) -> JobPriority:
        """Lane from the tier, shifted down one per position of the first scope."""
        rank = _TIER_RANK[self.lane_tier(config, now)]
        if scopes:
            order = [SyncScope.parse(n) for n in self.settings.capability_order]
            if scopes[0] in order:
                rank += order.index(scopes[0])
        return JobPriority.from_rank(rank)

    def sync_type_for(
        self, config: ProviderConfig, now: datetime, *, force_full: bool = False
    ) -> SyncType:
        """Full when forced, never synced, or last sync is older than full_sync_after_hours."""
        if force_full:
            return SyncType.FULL
        last = ensure_utc(config.last_synced_at)
        if last is None:
            return SyncType.FULL
        if now - last >= timedelta(hours=self.settings.full_sync_after_hours):
            return SyncType.FULL
        return SyncType.INCREMENTAL

    def max_items_for(self, sync_type: SyncType) -> int:
        if sync_type is SyncType.FULL:
            return self.settings.full_sync_max_messages
        return self.settings.incremental_sync_max_messages
