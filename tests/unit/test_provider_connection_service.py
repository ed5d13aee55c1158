"""Tests for ProviderConnectionService and rebalance_defaults."""

from datetime import timedelta

import pytest

from mailsync.application.dtos.credentials import OAuthTokens
from mailsync.application.services.provider_connection_service import (
    ProviderConnectionService,
    rebalance_defaults,
)
from mailsync.domain.enums import ProviderType, SyncScope, SyncState
from mailsync.domain.exceptions import ProviderNotFoundException, ValidationException
from tests.fakes import make_provider

IMAP_PARAMS = {"imap_server": "imap.example.com", "smtp_server": "smtp.example.com"}


@pytest.fixture
def connections(repo, tokens, adapters, queue, state, settings, clock):
    return ProviderConnectionService(repo, tokens, adapters, queue, state, settings, clock)


def _tokens(access: str = "ya29.access") -> OAuthTokens:
    return OAuthTokens(access_token=access, refresh_token="1//refresh", expires_at=None)


def test_rebalance_keeps_one_default_per_capability(vault, clock) -> None:
    a = make_provider(vault, "a", is_default=True, created_at=clock.now)
    b = make_provider(vault, "b", supports_calendar=True, created_at=clock.now)
    c = make_provider(
        vault, "c", supports_email=False, supports_calendar=True, created_at=clock.now
    )

    changed = rebalance_defaults([a, b, c])

    assert [x.id for x in changed] == ["c"]
    assert (a.is_default, b.is_default, c.is_default) == (True, False, True)


def test_rebalance_prefers_requested_provider(vault, clock) -> None:
    a = make_provider(vault, "a", is_default=True, created_at=clock.now)
    b = make_provider(vault, "b", supports_calendar=True, created_at=clock.now)
    c = make_provider(
        vault, "c", supports_email=False, supports_calendar=True, is_default=True
    )

    rebalance_defaults([a, b, c], preferred_id="b")

    assert (a.is_default, b.is_default, c.is_default) == (False, True, False)


def _defaults_per_capability(configs) -> dict[SyncScope, list[str]]:
    covered: dict[SyncScope, list[str]] = {}
    for config in configs:
        if config.is_default:
            for scope in config.capabilities:
                covered.setdefault(scope, []).append(config.id)
    return covered


def test_rebalance_never_orphans_a_capability(vault, clock) -> None:
    a = make_provider(
        vault, "a", supports_calendar=True, is_default=True, created_at=clock.now
    )
    b = make_provider(vault, "b", created_at=clock.now)

    rebalance_defaults([a, b], preferred_id="b")

    # b alone would leave calendar uncovered, so a keeps both capabilities.
    assert (a.is_default, b.is_default) == (True, False)
    assert _defaults_per_capability([a, b]) == {
        SyncScope.EMAIL: ["a"],
        SyncScope.CALENDAR: ["a"],
    }


def test_rebalance_splits_capabilities_when_a_disjoint_cover_exists(vault, clock) -> None:
    a = make_provider(
        vault, "a", supports_calendar=True, is_default=True, created_at=clock.now
    )
    b = make_provider(vault, "b", created_at=clock.now)
    c = make_provider(
        vault, "c", supports_email=False, supports_calendar=True, created_at=clock.now
    )

    changed = rebalance_defaults([a, b, c], preferred_id="b")

    assert {x.id for x in changed} == {"a", "b", "c"}
    assert (a.is_default, b.is_default, c.is_default) == (False, True, True)
    assert _defaults_per_capability([a, b, c]) == {
        SyncScope.EMAIL: ["b"],
        SyncScope.CALENDAR: ["c"],
    }


@pytest.mark.asyncio
async def test_connect_oauth_provider_stores_encrypted_tokens(connections, repo, vault):
    config = await connections.connect_oauth_provider(
        "tenant-1", ProviderType.MICROSOFT, "Owner@Example.com", _tokens()
    )

    stored = repo.get(config.id)
    assert stored.email == "owner@example.com"
    assert stored.is_default is True
    assert stored.access_token_ciphertext != "ya29.access"
    assert vault.decrypt(stored.access_token_ciphertext, stored.access_token_iv) == "ya29.access"
    assert vault.decrypt(stored.refresh_token_ciphertext, stored.refresh_token_iv) == "1//refresh"


@pytest.mark.asyncio
async def test_connecting_same_mailbox_reconnects_in_place(connections, repo, clock):
    first = await connections.connect_oauth_provider(
        "tenant-1", ProviderType.GOOGLE, "owner@example.com", _tokens("one")
    )
    await connections.tokens.revoke(first.id, "auth_revoked: invalid_grant")

    second = await connections.connect_oauth_provider(
        "tenant-1", ProviderType.GOOGLE, "owner@example.com", _tokens("two")
    )

    assert second.id == first.id
    assert len(repo.rows) == 1
    assert second.is_active is True
    assert second.sync_state is SyncState.IDLE


@pytest.mark.asyncio
async def test_second_provider_is_not_default_unless_requested(connections, repo):
    first = await connections.connect_oauth_provider(
        "tenant-1", ProviderType.GOOGLE, "a@example.com", _tokens()
    )
    second = await connections.connect_oauth_provider(
        "tenant-1", ProviderType.MICROSOFT, "b@example.com", _tokens()
    )
    assert repo.get(first.id).is_default is True
    assert repo.get(second.id).is_default is False

    await connections.set_default(second.id)
    assert repo.get(first.id).is_default is False
    assert repo.get(second.id).is_default is True


@pytest.mark.asyncio
async def test_set_default_refuses_to_orphan_a_capability(connections, repo, vault, clock):
    repo.add(
        make_provider(vault, "a", supports_calendar=True, is_default=True, created_at=clock.now)
    )
    repo.add(make_provider(vault, "b", created_at=clock.now))

    with pytest.raises(ValidationException):
        await connections.set_default("b")

    assert repo.get("a").is_default is True
    assert repo.get("b").is_default is False


@pytest.mark.asyncio
async def test_connect_oauth_rejects_generic_type(connections):
    with pytest.raises(ValidationException):
        await connections.connect_oauth_provider(
            "tenant-1", ProviderType.GENERIC, "a@example.com", _tokens()
        )


@pytest.mark.asyncio
async def test_connect_generic_provider_checks_connection(connections, repo, vault, adapters):
    config = await connections.connect_generic_provider(
        "tenant-1", "me@example.com", "app-password", IMAP_PARAMS
    )

    stored = repo.get(config.id)
    assert stored.provider_type is ProviderType.GENERIC
    assert stored.connection_params["username"] == "me@example.com"
    assert vault.decrypt(stored.access_token_ciphertext, stored.access_token_iv) == "app-password"
    assert stored.refresh_token_ciphertext is None
    assert [name for name, _, _ in adapters.calls] == ["test_connection"]
    assert adapters.closed == 1


@pytest.mark.asyncio
async def test_connect_generic_provider_failed_check_stores_nothing(connections, repo, adapters):
    adapters.connection_ok = False
    with pytest.raises(ValidationException):
        await connections.connect_generic_provider(
            "tenant-1", "me@example.com", "wrong", IMAP_PARAMS
        )
    assert repo.rows == {}


@pytest.mark.parametrize(
    "params, kwargs",
    [
        ({"imap_server": "imap.example.com"}, {}),
        (IMAP_PARAMS, {"supports_calendar": True}),
    ],
)
@pytest.mark.asyncio
async def test_connect_generic_provider_validates_params(connections, params, kwargs):
    with pytest.raises(ValidationException):
        await connections.connect_generic_provider(
            "tenant-1", "me@example.com", "pw", params, **kwargs
        )


@pytest.mark.asyncio
async def test_reconnect_generic_provider_with_new_password(
    connections, repo, vault, clock, state
):
    repo.add(
        make_provider(
            vault,
            "g1",
            provider_type=ProviderType.GENERIC,
            access_token="old",
            connection_params=dict(IMAP_PARAMS),
        )
    )
    await state.record_auth_revoked("g1", "auth_revoked/AUTHENTICATIONFAILED")

    config = await connections.reconnect_provider("g1", password="new")

    assert config.is_active is True
    assert config.error_streak == 0
    stored = repo.get("g1")
    assert vault.decrypt(stored.access_token_ciphertext, stored.access_token_iv) == "new"


@pytest.mark.asyncio
async def test_reconnect_requires_matching_credential_kind(connections, repo, vault):
    repo.add(make_provider(vault, "p1"))
    with pytest.raises(ValidationException):
        await connections.reconnect_provider("p1", password="nope")
    with pytest.raises(ProviderNotFoundException):
        await connections.reconnect_provider("missing", tokens=_tokens())


@pytest.mark.asyncio
async def test_disconnect_promotes_next_default(connections, repo, vault, clock, queue):
    repo.add(make_provider(vault, "a", is_default=True, created_at=clock.now))
    repo.add(make_provider(vault, "b", created_at=clock.now + timedelta(minutes=1)))

    assert await connections.disconnect_provider("a") is True

    assert "a" not in repo.rows
    assert repo.get("b").is_default is True
    # Nothing was running for "a", so no cancellation flag outlives it.
    assert not queue.is_tracked("a")
    assert not queue.is_cancelled("a")
