"""SQL repository integration tests. Require Postgres; rows are removed after each test."""

from datetime import timedelta

import pytest

from mailsync.application.dtos.mailbox import MailFolder
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.enums import ProviderType, SyncState
from mailsync.infrastructure.persistence.repositories import (
    ProviderConfigRepository,
    SyncedItemRepository,
)
from mailsync.shared.utils.datetime import utc_now
from mailsync.shared.utils.generators import generate_cuid
from tests.fakes import make_message


def _config(**fields) -> ProviderConfig:
    provider_id = generate_cuid()
    return ProviderConfig(
        id=provider_id,
        tenant_id=fields.pop("tenant_id", f"tenant-{provider_id}"),
        provider_type=ProviderType.GOOGLE,
        email=f"{provider_id}@example.com",
        access_token_ciphertext="aa",
        access_token_iv="bb",
        **fields,
    )


@pytest.fixture
async def repo(db_sessions):
    repository = ProviderConfigRepository(db_sessions)
    created: list[str] = []
    repository.created = created
    yield repository
    for provider_id in created:
        await repository.delete_provider_config(provider_id)


async def _save(repo, config: ProviderConfig) -> ProviderConfig:
    repo.created.append(config.id)
    return await repo.save_provider_config(config)


@pytest.mark.requires_db
@pytest.mark.asyncio
async def test_save_and_get_round_trips_every_field(repo) -> None:
    """Saved config comes back with enums, JSON columns and aware datetimes."""
    now = utc_now()
    config = _config(
        sync_state=SyncState.BACKOFF,
        sync_priority=2,
        next_sync_at=now + timedelta(minutes=5),
        sync_cursors={"email": "abc123"},
        connection_params={"label": "work"},
        error_streak=2,
    )
    saved = await _save(repo, config)

    found = await repo.get_provider_config(config.id)

    assert found is not None
    assert found.sync_state is SyncState.BACKOFF
    assert found.sync_cursors == {"email": "abc123"}
    assert found.connection_params == {"label": "work"}
    assert found.next_sync_at == config.next_sync_at
    assert found.next_sync_at.tzinfo is not None
    assert found.created_at is not None
    assert saved.error_streak == 2


@pytest.mark.requires_db
@pytest.mark.asyncio
async def test_update_overwrites_existing_row(repo) -> None:
    """Saving again updates in place."""
    config = await _save(repo, _config())
    config.sync_cursors["email"] = "abc456"
    config.error_streak = 0

    await repo.save_provider_config(config)
    found = await repo.get_provider_config(config.id)

    assert found.sync_cursors == {"email": "abc456"}


@pytest.mark.requires_db
@pytest.mark.asyncio
async def test_load_due_providers_filters_and_orders(repo) -> None:
    """Only due, active, credentialed providers; priority then next_sync_at."""
    now = utc_now()
    tenant = f"tenant-{generate_cuid()}"
    later = await _save(repo, _config(tenant_id=tenant, sync_priority=1, next_sync_at=now))
    urgent = await _save(
        repo,
        _config(tenant_id=tenant, sync_priority=1, next_sync_at=now - timedelta(minutes=5)),
    )
    never = await _save(repo, _config(tenant_id=tenant, sync_priority=3))
    await _save(repo, _config(tenant_id=tenant, next_sync_at=now + timedelta(hours=1)))
    await _save(repo, _config(tenant_id=tenant, is_active=False))
    await _save(repo, _config(tenant_id=tenant, sync_state=SyncState.DISABLED))

    due = await repo.load_due_providers(now, limit=1000)
    ours = [c.id for c in due if c.tenant_id == tenant]

    assert ours == [urgent.id, later.id, never.id]


@pytest.mark.requires_db
@pytest.mark.asyncio
async def test_list_by_tenant_and_delete(repo) -> None:
    """list_by_tenant returns only the tenant's rows; delete reports a missing row."""
    tenant = f"tenant-{generate_cuid()}"
    first = await _save(repo, _config(tenant_id=tenant))
    await _save(repo, _config(tenant_id=tenant))

    assert len(await repo.list_by_tenant(tenant)) == 2
    assert await repo.delete_provider_config(first.id) is True
    assert await repo.delete_provider_config(first.id) is False
    assert len(await repo.list_by_tenant(tenant)) == 1


@pytest.mark.requires_db
@pytest.mark.asyncio
async def test_upsert_is_idempotent_per_external_id(repo, db_sessions) -> None:
    """Re-running the same page updates rows instead of duplicating them."""
    config = await _save(repo, _config())
    items = SyncedItemRepository(db_sessions)
    page = [make_message("m1"), make_message("m2")]

    first = await items.upsert_emails(config.tenant_id, config.id, page)
    second = await items.upsert_emails(config.tenant_id, config.id, page + [make_message("m3")])

    assert (first.inserted, first.updated) == (2, 0)
    assert (second.inserted, second.updated) == (1, 2)
    assert await items.delete_emails(config.id, ["m1", "missing"]) == 1


@pytest.mark.requires_db
@pytest.mark.asyncio
async def test_folders_are_upserted_and_reconciled(repo, db_sessions) -> None:
    """A complete listing replaces the stored folders for that provider only."""
    config = await _save(repo, _config())
    other = await _save(repo, _config())
    items = SyncedItemRepository(db_sessions)
    inbox = MailFolder("INBOX", "INBOX", special_use="INBOX")
    await items.upsert_folders(other.tenant_id, other.id, [inbox])

    first = await items.upsert_folders(
        config.tenant_id, config.id, [inbox, MailFolder("Old", "Old")]
    )
    second = await items.upsert_folders(
        config.tenant_id, config.id, [MailFolder("INBOX", "INBOX", unread_count=2)]
    )

    assert (first.inserted, first.updated) == (2, 0)
    assert (second.inserted, second.updated) == (0, 1)
    assert await items.delete_folders_except(config.id, ["INBOX"]) == 1
    assert await items.delete_folders_except(config.id, []) == 1
    assert await items.delete_folders_except(other.id, ["INBOX"]) == 0


@pytest.mark.requires_db
@pytest.mark.asyncio
async def test_statistics_count_active_and_errors(repo) -> None:
    """Totals include the rows this test created."""
    now = utc_now()
    before = await repo.get_statistics(now - timedelta(hours=1))
    await _save(repo, _config(error_streak=3, last_synced_at=now))
    await _save(repo, _config(is_active=False))

    after = await repo.get_statistics(now - timedelta(hours=1))

    assert after.total == before.total + 2
    assert after.active == before.active + 1
    assert after.with_errors == before.with_errors + 1
    assert after.synced_since == before.synced_since + 1
