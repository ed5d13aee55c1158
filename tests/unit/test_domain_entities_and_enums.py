"""Tests for domain entities (ProviderConfig, SyncJob, SyncResult) and enums."""

import pytest

from mailsync.domain.entities.classified_error import CallResult, ClassifiedError
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.entities.sync_job import ScopeSyncResult, SyncJob, SyncResult
from mailsync.domain.enums import (
    ErrorCategory,
    JobPriority,
    ProviderType,
    SubmitOutcome,
    SyncScope,
    SyncState,
    SyncType,
)
from mailsync.domain.exceptions import InvalidSyncStateTransition, ValidationException
from tests.fakes import NOW


def _config(**kwargs) -> ProviderConfig:
    values = {
        "id": "p1",
        "tenant_id": "tenant-1",
        "provider_type": ProviderType.GOOGLE,
        "email": "owner@example.com",
    }
    values.update(kwargs)
    return ProviderConfig(**values)


@pytest.mark.parametrize(
    "kwargs, field",
    [
        ({"id": ""}, "id"),
        ({"tenant_id": ""}, "tenant_id"),
        ({"email": "not-an-address"}, "email"),
        ({"supports_email": False}, "capabilities"),
        ({"provider_type": ProviderType.GENERIC, "supports_contacts": True}, "supports_contacts"),
        ({"sync_priority": 0}, "sync_priority"),
        ({"sync_priority": 6}, "sync_priority"),
    ],
)
def test_provider_config_validation(kwargs, field) -> None:
    with pytest.raises(ValidationException) as exc_info:
        _config(**kwargs)
    assert exc_info.value.details.get("field") == field


def test_capabilities_reflect_flags() -> None:
    config = _config(supports_calendar=True)
    assert config.capabilities == {SyncScope.EMAIL, SyncScope.CALENDAR}
    assert config.supports(SyncScope.CALENDAR)
    assert not config.supports(SyncScope.CONTACTS)


def test_scheduler_state_machine_happy_path() -> None:
    config = _config()
    for target in (SyncState.DUE, SyncState.ENQUEUED, SyncState.RUNNING, SyncState.IDLE):
        config.transition_to(target)
    assert config.sync_state is SyncState.IDLE


@pytest.mark.parametrize(
    "current, target",
    [
        (SyncState.IDLE, SyncState.RUNNING),
        (SyncState.DISABLED, SyncState.ENQUEUED),
        (SyncState.DISABLED, SyncState.DUE),
        (SyncState.BACKOFF, SyncState.RUNNING),
        (SyncState.RUNNING, SyncState.ENQUEUED),
    ],
)
def test_invalid_transitions_raise(current: SyncState, target: SyncState) -> None:
    config = _config(sync_state=current)
    with pytest.raises(InvalidSyncStateTransition):
        config.transition_to(target)
    assert config.sync_state is current


def test_deactivate_clears_credentials_and_is_idempotent() -> None:
    config = _config(
        access_token_ciphertext="aa",
        access_token_iv="bb",
        refresh_token_ciphertext="cc",
        refresh_token_iv="dd",
        next_sync_at=NOW,
    )
    config.deactivate("auth_revoked: invalid_grant", NOW)
    config.deactivate("auth_revoked: invalid_grant", NOW)

    assert config.is_active is False
    assert config.sync_state is SyncState.DISABLED
    assert not config.has_access_credential()
    assert not config.has_refresh_credential()
    assert config.next_sync_at is None
    assert not config.is_schedulable()

    config.reactivate()
    assert config.sync_state is SyncState.IDLE
    assert config.last_error is None


def test_sync_job_runs_full_for_scopes_without_cursor() -> None:
    job = SyncJob(
        job_id="j1",
        provider_id="p1",
        tenant_id="tenant-1",
        provider_type=ProviderType.GOOGLE,
        sync_type=SyncType.INCREMENTAL,
        priority=JobPriority.NORMAL,
        scopes=(SyncScope.EMAIL, SyncScope.CALENDAR),
        cursors={SyncScope.EMAIL: "abc123", SyncScope.CALENDAR: None},
        enqueued_at=NOW,
    )
    assert job.cursor == "abc123"
    assert job.sync_type_for(SyncScope.EMAIL) is SyncType.INCREMENTAL
    assert job.sync_type_for(SyncScope.CALENDAR) is SyncType.FULL


def test_sync_result_aggregates_scopes() -> None:
    result = SyncResult("p1", "j1")
    result.scopes[SyncScope.EMAIL] = ScopeSyncResult(
        SyncScope.EMAIL, SyncType.INCREMENTAL, synced=12, new_items=12, next_cursor="abc456"
    )
    result.scopes[SyncScope.CALENDAR] = ScopeSyncResult(
        SyncScope.CALENDAR, SyncType.FULL, synced=3, new_items=1
    )
    assert result.succeeded
    assert result.emails_synced == 12
    assert result.events_synced == 3
    assert result.new_items == 13
    assert result.next_cursors == {"email": "abc456"}
    assert result.next_cursor == "abc456"


def test_classified_error_describe_and_call_result() -> None:
    error = ClassifiedError(ErrorCategory.RATE_LIMITED, "HTTP 429", 429, "TooManyRequests")
    assert error.describe() == "rate_limited/429/TooManyRequests: HTTP 429"
    assert error.is_retryable and not error.is_auth_failure
    assert CallResult.success(5).ok
    assert not CallResult.failure(error).ok


def test_enum_helpers() -> None:
    assert SyncScope.parse(" Email ") is SyncScope.EMAIL
    assert JobPriority.from_rank(7) is JobPriority.LOW
    assert JobPriority.from_rank(-1) is JobPriority.HIGH
    assert SubmitOutcome.SUPERSEDED.enqueued and not SubmitOutcome.DUPLICATE.enqueued
    assert ProviderType.GOOGLE.uses_oauth and not ProviderType.GENERIC.uses_oauth
    with pytest.raises(ValueError):
        SyncState.parse("sleeping")
