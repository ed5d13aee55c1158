"""Tests for CadencePolicy: tiers, backoff bounds, lanes and sync type."""

from datetime import timedelta

import pytest

from mailsync.core.config import Settings
from mailsync.domain.entities.classified_error import ClassifiedError
from mailsync.domain.entities.sync_job import ScopeSyncResult, SyncResult
from mailsync.domain.enums import ErrorCategory, JobPriority, SyncScope, SyncType
from tests.fakes import make_provider


@pytest.mark.parametrize(
    "rate, tier",
    [(10.0, 1), (4.0, 1), (3.9, 2), (2.0, 2), (1.0, 3), (0.2, 4), (0.05, 5), (0.0, 5)],
)
def test_priority_for_rate(policy, rate: float, tier: int) -> None:
    assert policy.priority_for_rate(rate) == tier


def test_backoff_is_monotonic_and_capped(policy) -> None:
    """base * 2**n never decreases with n and never exceeds the max interval."""
    base = timedelta(minutes=15)
    delays = [policy.backoff_delay(base, n) for n in range(0, 64)]
    assert delays[0] == base
    assert delays[1] == base * 2
    assert all(a <= b for a, b in zip(delays, delays[1:], strict=False))
    assert max(delays) == policy.max_interval
    assert delays[-1] == policy.max_interval


def test_next_sync_at_grows_with_error_streak(policy, vault, clock) -> None:
    config = make_provider(vault, sync_priority=2)
    previous = timedelta(0)
    for streak in range(12):
        config.error_streak = streak
        gap = policy.next_sync_at(config, clock.now) - clock.now
        assert gap >= previous
        assert gap <= policy.max_interval
        previous = gap


def test_recent_activity_promotes_one_tier(policy, vault, clock) -> None:
    config = make_provider(vault, sync_priority=3)
    assert policy.cadence_tier(config, clock.now) == 3
    config.last_activity_at = clock.now - timedelta(minutes=10)
    assert policy.cadence_tier(config, clock.now) == 2
    assert policy.base_interval(config, clock.now) == timedelta(minutes=15)


def test_error_streak_demotes_lane(policy, vault, clock) -> None:
    config = make_provider(vault, sync_priority=1)
    scopes = (SyncScope.EMAIL,)
    assert policy.lane_for(config, scopes, clock.now) is JobPriority.HIGH
    config.error_streak = 3
    assert policy.lane_for(config, scopes, clock.now) is JobPriority.NORMAL


def test_lane_shifts_for_lower_priority_first_scope(policy, vault, clock) -> None:
    config = make_provider(vault, sync_priority=1)
    assert policy.lane_for(config, (SyncScope.CALENDAR,), clock.now) is JobPriority.NORMAL
    assert policy.lane_for(config, (SyncScope.CONTACTS,), clock.now) is JobPriority.LOW


def test_scopes_follow_capability_order(policy, vault) -> None:
    config = make_provider(vault, supports_contacts=True, supports_calendar=True)
    assert policy.scopes_for(config) == (SyncScope.EMAIL, SyncScope.CALENDAR, SyncScope.CONTACTS)
    policy.settings.capability_priority = "calendar,email"
    assert policy.scopes_for(config) == (SyncScope.CALENDAR, SyncScope.EMAIL, SyncScope.CONTACTS)


def test_sync_type(policy, vault, clock) -> None:
    config = make_provider(vault)
    assert policy.sync_type_for(config, clock.now) is SyncType.FULL
    config.last_synced_at = clock.now - timedelta(minutes=5)
    assert policy.sync_type_for(config, clock.now) is SyncType.INCREMENTAL
    assert policy.sync_type_for(config, clock.now, force_full=True) is SyncType.FULL
    config.last_synced_at = clock.now - timedelta(hours=6)
    assert policy.sync_type_for(config, clock.now) is SyncType.INCREMENTAL
    config.last_synced_at = clock.now - timedelta(hours=24)
    assert policy.sync_type_for(config, clock.now) is SyncType.FULL


def test_rate_limited_delay_prefers_provider_hint(policy) -> None:
    hinted = ClassifiedError(ErrorCategory.RATE_LIMITED, "429", retry_after=timedelta(seconds=120))
    assert policy.rate_limited_delay(hinted, 1) == timedelta(seconds=120)
    bare = ClassifiedError(ErrorCategory.RATE_LIMITED, "429")
    assert policy.rate_limited_delay(bare, 1) == timedelta(seconds=60)
    assert policy.rate_limited_delay(bare, 3) == timedelta(seconds=240)
    huge = ClassifiedError(ErrorCategory.RATE_LIMITED, "429", retry_after=timedelta(days=30))
    assert policy.rate_limited_delay(huge, 1) == policy.max_interval


def test_activity_ema_only_counts_incremental_syncs(policy, vault, clock) -> None:
    config = make_provider(vault, last_synced_at=clock.now - timedelta(hours=1))
    full = SyncResult("p1", "j1")
    full.scopes[SyncScope.EMAIL] = ScopeSyncResult(SyncScope.EMAIL, SyncType.FULL, 200, 200)
    policy.update_activity(config, full, clock.now)
    assert config.avg_activity_rate == 0.0
    assert config.sync_priority == 3
    assert config.last_activity_at is None

    incremental = SyncResult("p1", "j2")
    incremental.scopes[SyncScope.EMAIL] = ScopeSyncResult(
        SyncScope.EMAIL, SyncType.INCREMENTAL, 10, 10
    )
    policy.update_activity(config, incremental, clock.now)
    # 0.7 * 10/h + 0.3 * 0
    assert config.avg_activity_rate == pytest.approx(7.0)
    assert config.sync_priority == 1
    assert config.last_activity_at == clock.now


@pytest.mark.asyncio
async def test_scheduled_cycles_settle_into_incremental_syncs(policy, state, repo, vault, clock):
    """After the initial full sync, a quiet mailbox keeps syncing incrementally."""
    repo.add(make_provider(vault))
    sync_types: list[SyncType] = []
    gaps: list[timedelta] = []

    for cycle in range(4):
        sync_type = policy.sync_type_for(repo.get("p1"), clock.now)
        sync_types.append(sync_type)
        result = SyncResult("p1", f"j{cycle}")
        result.scopes[SyncScope.EMAIL] = ScopeSyncResult(SyncScope.EMAIL, sync_type)
        saved = await state.record_success("p1", result)
        gaps.append(saved.next_sync_at - clock.now)
        clock.now = saved.next_sync_at

    assert sync_types == [SyncType.FULL] + [SyncType.INCREMENTAL] * 3
    # Full sync keeps the starting tier; quiet incremental syncs drift to tier 5.
    assert gaps == [timedelta(minutes=30)] + [timedelta(hours=6)] * 3
    assert repo.get("p1").sync_priority == 5


def test_full_sync_threshold_must_exceed_slowest_tier() -> None:
    with pytest.raises(ValueError, match="slowest tier interval"):
        Settings(full_sync_after_hours=6)
