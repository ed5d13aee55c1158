"""Tests for the SyncEngine facade: trigger_sync, provider health, workers and stats."""

import asyncio
from datetime import timedelta

import httpx
import pytest

from mailsync.application.dtos.mailbox import EmailSyncPage
from mailsync.core.engine import SyncEngine
from mailsync.domain.entities.sync_job import ScopeSyncResult, SyncResult
from mailsync.domain.enums import (
    JobPriority,
    ProviderHealthStatus,
    ProviderType,
    SubmitOutcome,
    SyncScope,
    SyncState,
    SyncType,
)
from mailsync.domain.exceptions import ProviderInactiveException, ProviderNotFoundException
from mailsync.infrastructure.external.mailbox.error_classifier import classify_provider_error
from mailsync.infrastructure.external.mailbox.oauth_drivers import TokenRefreshError
from tests.fakes import make_message, make_provider


@pytest.fixture
async def engine(repo, items, vault, refresher, adapters, settings, clock):
    async def no_sleep(delay: float) -> None:
        return None

    engine = SyncEngine(
        repo,
        items,
        vault,
        refresher,
        adapters,
        classify_provider_error,
        settings=settings,
        clock=clock,
        sleep=no_sleep,
    )
    yield engine
    await engine.stop()


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_trigger_sync_enqueues_high_priority_job(engine, repo, vault):
    repo.add(make_provider(vault, "p1", sync_priority=5))

    result = await engine.trigger_sync("p1")

    assert result.outcome is SubmitOutcome.ACCEPTED
    assert result.job_id is not None
    assert result.sync_type is SyncType.FULL
    assert engine.queue.pending_job("p1").priority is JobPriority.HIGH
    assert (await engine.trigger_sync("p1")).outcome is SubmitOutcome.DUPLICATE


@pytest.mark.asyncio
async def test_trigger_sync_rejects_unknown_and_disabled(engine, repo, vault, clock):
    with pytest.raises(ProviderNotFoundException):
        await engine.trigger_sync("missing")
    config = make_provider(vault, "p1")
    config.deactivate("auth_revoked", clock.now)
    repo.add(config)
    with pytest.raises(ProviderInactiveException):
        await engine.trigger_sync("p1")


@pytest.mark.asyncio
async def test_notify_change_enqueues_quiet_provider_on_normal_lane(engine, repo, vault, clock):
    repo.add(
        make_provider(
            vault,
            "p1",
            sync_priority=5,
            last_synced_at=clock.now - timedelta(minutes=10),
            next_sync_at=clock.now + timedelta(hours=6),
            sync_cursors={"email": "h1"},
        )
    )

    result = await engine.notify_change("p1")

    assert result.outcome is SubmitOutcome.ACCEPTED
    assert result.sync_type is SyncType.INCREMENTAL
    assert engine.queue.pending_job("p1").priority is JobPriority.NORMAL
    assert repo.get("p1").sync_state is SyncState.ENQUEUED


@pytest.mark.asyncio
async def test_notify_change_keeps_a_busier_lane(engine, repo, vault, clock):
    repo.add(make_provider(vault, "p1", sync_priority=1))

    await engine.notify_change("p1")

    assert engine.queue.pending_job("p1").priority is JobPriority.HIGH


@pytest.mark.asyncio
async def test_notify_change_during_running_job_resyncs_right_after(engine, repo, vault, clock):
    repo.add(make_provider(vault, "p1", sync_priority=5))
    await engine.trigger_sync("p1")
    job = await engine.queue.claim(JobPriority.HIGH)
    await engine.state.mark_running("p1")

    notified = await engine.notify_change("p1")
    assert notified.outcome is SubmitOutcome.DUPLICATE

    result = SyncResult("p1", job.job_id)
    result.scopes[SyncScope.EMAIL] = ScopeSyncResult(SyncScope.EMAIL, SyncType.FULL)
    saved = await engine.state.record_success("p1", result)
    assert saved.next_sync_at == clock.now

    # The request is used up by that success.
    await engine.state.mark_running("p1")
    saved = await engine.state.record_success("p1", result)
    assert saved.next_sync_at > clock.now


@pytest.mark.asyncio
async def test_notify_change_rejects_unknown_and_disabled(engine, repo, vault, clock):
    with pytest.raises(ProviderNotFoundException):
        await engine.notify_change("missing")
    config = make_provider(vault, "p1")
    config.deactivate("auth_revoked", clock.now)
    repo.add(config)
    with pytest.raises(ProviderInactiveException):
        await engine.notify_change("p1")


@pytest.mark.asyncio
async def test_workers_run_triggered_job(engine, repo, vault, adapters, items, clock):
    repo.add(make_provider(vault, "p1", token_expires_at=clock.now + timedelta(hours=1)))
    adapters.script(
        "email", EmailSyncPage(messages=[make_message("m1"), make_message("m2")], next_cursor="h9")
    )
    engine.start(schedule=False)
    assert engine.running

    await engine.trigger_sync("p1")
    await _wait_for(lambda: repo.get("p1").last_synced_at is not None)
    await _wait_for(lambda: not engine.queue.is_tracked("p1"))

    assert items.email_ids("p1") == {"m1", "m2"}
    assert repo.get("p1").sync_cursors == {"email": "h9"}
    health = await engine.get_provider_health("p1")
    assert health.status is ProviderHealthStatus.HEALTHY


@pytest.mark.asyncio
async def test_permanent_failure_lands_in_dead_letters(engine, repo, vault, adapters):
    request = httpx.Request("GET", "https://graph.microsoft.com/v1.0/me/messages/delta")
    response = httpx.Response(400, request=request)
    adapters.script("email", httpx.HTTPStatusError("bad", request=request, response=response))
    repo.add(make_provider(vault, "p1"))
    engine.start(schedule=False)

    await engine.trigger_sync("p1")
    await _wait_for(lambda: len(engine.dead_letters) == 1)

    [entry] = engine.dead_letters
    assert entry.provider_id == "p1"
    assert entry.priority is JobPriority.HIGH
    assert entry.reason.startswith("permanent/400")


@pytest.mark.parametrize(
    "fields, expected",
    [
        ({}, ProviderHealthStatus.PENDING),
        ({"last_synced_at_offset": 5}, ProviderHealthStatus.HEALTHY),
        ({"last_synced_at_offset": 5, "error_streak": 1}, ProviderHealthStatus.BACKOFF),
        ({"last_synced_at_offset": 5, "rate_limit_streak": 2}, ProviderHealthStatus.BACKOFF),
        ({"last_synced_at_offset": 5, "error_streak": 3}, ProviderHealthStatus.ERROR),
        ({"is_active": False}, ProviderHealthStatus.NEEDS_RECONNECTION),
        ({"access_token": None}, ProviderHealthStatus.NEEDS_RECONNECTION),
    ],
)
@pytest.mark.asyncio
async def test_health_status(engine, repo, vault, clock, fields, expected):
    fields = dict(fields)
    offset = fields.pop("last_synced_at_offset", None)
    access_token = fields.pop("access_token", "access-0")
    if offset is not None:
        fields["last_synced_at"] = clock.now - timedelta(minutes=offset)
    repo.add(make_provider(vault, "p1", access_token=access_token, **fields))

    health = await engine.get_provider_health("p1")

    assert health.status is expected
    assert health.show_error_badge is (expected is ProviderHealthStatus.ERROR)
    assert health.connection_ok is None


@pytest.mark.asyncio
async def test_backoff_without_badge_keeps_last_synced(engine, repo, vault, clock):
    """Under backoff the provider shows when it last synced and no error badge."""
    synced = clock.now - timedelta(hours=1)
    repo.add(
        make_provider(
            vault,
            "p1",
            last_synced_at=synced,
            error_streak=2,
            sync_state=SyncState.BACKOFF,
            last_error="transient/503: HTTP 503",
        )
    )
    health = await engine.get_provider_health("p1")
    assert health.status is ProviderHealthStatus.BACKOFF
    assert health.last_synced_at == synced
    assert health.show_error_badge is False


@pytest.mark.asyncio
async def test_health_shows_syncing_while_queued(engine, repo, vault):
    repo.add(make_provider(vault, "p1"))
    await engine.trigger_sync("p1")
    assert (await engine.get_provider_health("p1")).status is ProviderHealthStatus.SYNCING


@pytest.mark.asyncio
async def test_health_connection_check(engine, repo, vault, adapters, clock):
    repo.add(make_provider(vault, "p1", token_expires_at=clock.now + timedelta(hours=1)))

    health = await engine.get_provider_health("p1", check_connection=True)
    assert health.connection_ok is True
    assert adapters.closed == 1

    adapters.connection_ok = False
    health = await engine.get_provider_health("p1", check_connection=True)
    assert health.connection_ok is False


@pytest.mark.asyncio
async def test_health_connection_check_on_revoked_refresh(
    engine, repo, vault, refresher, clock
):
    repo.add(make_provider(vault, "p1", token_expires_at=clock.now - timedelta(minutes=1)))
    refresher.error = TokenRefreshError(ProviderType.GOOGLE, 400, "invalid_grant")

    health = await engine.get_provider_health("p1", check_connection=True)

    assert health.connection_ok is False
    assert health.status is ProviderHealthStatus.NEEDS_RECONNECTION


@pytest.mark.asyncio
async def test_health_unknown_provider(engine):
    with pytest.raises(ProviderNotFoundException):
        await engine.get_provider_health("missing")


@pytest.mark.asyncio
async def test_sync_stats(engine, repo, vault, clock):
    repo.add(make_provider(vault, "a", last_synced_at=clock.now - timedelta(minutes=5)))
    repo.add(make_provider(vault, "b", error_streak=2))
    repo.add(make_provider(vault, "c", is_active=False))
    await engine.trigger_sync("a")

    stats = await engine.get_sync_stats()

    assert stats.providers.total == 3
    assert stats.providers.active == 2
    assert stats.providers.never_synced == 2
    assert stats.providers.synced_since == 1
    assert stats.providers.with_errors == 1
    lanes = {lane.lane: lane for lane in stats.lanes}
    assert lanes[JobPriority.HIGH].queued == 1
    assert stats.dead_letters == 0
    assert stats.scheduler_running is False


@pytest.mark.asyncio
async def test_remove_provider_cancels_and_deletes(engine, repo, vault):
    repo.add(make_provider(vault, "p1"))
    await engine.trigger_sync("p1")

    assert await engine.remove_provider("p1") is True

    assert "p1" not in repo.rows
    assert not engine.queue.is_tracked("p1")
    assert await engine.remove_provider("p1") is False
