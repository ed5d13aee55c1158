"""ProviderConfig domain entity.

One connected mailbox for one tenant: identity, capabilities, encrypted
credential material and scheduling state. Independent of persistence.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mailsync.domain.enums import ProviderType, SyncScope, SyncState
from mailsync.domain.exceptions import InvalidSyncStateTransition, ValidationException

# Allowed scheduler transitions. RUNNING is only entered from ENQUEUED and
# DISABLED is only left through an explicit reconnect (to IDLE). Stale
# ENQUEUED/RUNNING rows left by a stopped process may fall back to DUE.
_ALLOWED_TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.DUE, SyncState.ENQUEUED, SyncState.DISABLED}),
    SyncState.DUE: frozenset(
        {SyncState.DUE, SyncState.ENQUEUED, SyncState.IDLE, SyncState.DISABLED}
    ),
    SyncState.ENQUEUED: frozenset(
        {
            SyncState.ENQUEUED,
            SyncState.RUNNING,
            SyncState.DUE,
            SyncState.IDLE,
            SyncState.DISABLED,
        }
    ),
    SyncState.RUNNING: frozenset(
        {SyncState.IDLE, SyncState.BACKOFF, SyncState.DUE, SyncState.DISABLED}
    ),
    SyncState.BACKOFF: frozenset(
        {SyncState.DUE, SyncState.ENQUEUED, SyncState.BACKOFF, SyncState.DISABLED}
    ),
    SyncState.DISABLED: frozenset({SyncState.IDLE, SyncState.DISABLED}),
}


@dataclass
class ProviderConfig:
    """Domain entity for a connected provider.

    Credential fields hold AES-256-CBC ciphertext and IV as hex strings and
    are never decrypted here. For generic providers the access-token pair
    holds the encrypted IMAP/SMTP/CalDAV password.
    """

    id: str
    tenant_id: str
    provider_type: ProviderType
    email: str
    supports_email: bool = True
    supports_calendar: bool = False
    supports_contacts: bool = False
    is_default: bool = False
    is_active: bool = True
    access_token_ciphertext: str | None = None
    access_token_iv: str | None = None
    refresh_token_ciphertext: str | None = None
    refresh_token_iv: str | None = None
    token_expires_at: datetime | None = None
    token_refreshed_at: datetime | None = None
    connection_params: dict[str, Any] = field(default_factory=dict)
    last_synced_at: datetime | None = None
    last_activity_at: datetime | None = None
    error_streak: int = 0
    rate_limit_streak: int = 0
    next_sync_at: datetime | None = None
    sync_state: SyncState = SyncState.IDLE
    sync_priority: int = 3
    avg_activity_rate: float = 0.0
    sync_cursors: dict[str, str] = field(default_factory=dict)
    last_error: str | None = None
    last_error_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Validate identity and capability rules. Raises ValidationException if invalid."""
        if not self.id:
            raise ValidationException("Provider ID is required", field="id")
        if not self.tenant_id:
            raise ValidationException("Tenant ID is required", field="tenant_id")
        if not self.email or "@" not in self.email:
            raise ValidationException("A valid mailbox email is required", field="email")
        if not (self.supports_email or self.supports_calendar or self.supports_contacts):
            raise ValidationException(
                "Provider must support at least one capability", field="capabilities"
            )
        if self.provider_type is ProviderType.GENERIC and self.supports_contacts:
            raise ValidationException(
                "Generic providers do not support contacts", field="supports_contacts"
            )
        if not 1 <= self.sync_priority <= 5:
            raise ValidationException("sync_priority must be 1..5", field="sync_priority")

    @property
    def capabilities(self) -> frozenset[SyncScope]:
        scopes = set()
        if self.supports_email:
            scopes.add(SyncScope.EMAIL)
        if self.supports_calendar:
            scopes.add(SyncScope.CALENDAR)
        if self.supports_contacts:
            scopes.add(SyncScope.CONTACTS)
        return frozenset(scopes)

    def supports(self, scope: SyncScope) -> bool:
        return scope in self.capabilities

    def has_access_credential(self) -> bool:
        return bool(self.access_token_ciphertext and self.access_token_iv)

    def has_refresh_credential(self) -> bool:
        return bool(self.refresh_token_ciphertext and self.refresh_token_iv)

    def is_schedulable(self) -> bool:
        """Whether the scheduler may enqueue this provider at all."""
        return (
            self.is_active
            and self.sync_state is not SyncState.DISABLED
            and self.has_access_credential()
        )

    def cursor_for(self, scope: SyncScope) -> str | None:
        return self.sync_cursors.get(scope.value)

    def transition_to(self, target: SyncState) -> None:
        """Move the scheduler state machine to target.

        Raises:
            InvalidSyncStateTransition: If target is not reachable from the
                current state.
        """
        if target not in _ALLOWED_TRANSITIONS[self.sync_state]:
            raise InvalidSyncStateTransition(self.id, self.sync_state.value, target.value)
        self.sync_state = target

    def clear_credentials(self) -> None:
        """Null every credential field (on revocation)."""
        self.access_token_ciphertext = None
        self.access_token_iv = None
        self.refresh_token_ciphertext = None
        self.refresh_token_iv = None
        self.token_expires_at = None

    def deactivate(self, reason: str, at: datetime) -> None:
        """Soft-disable after unrecoverable auth failure. Idempotent."""
        self.is_active = False
        self.clear_credentials()
        if self.sync_state is not SyncState.DISABLED:
            self.transition_to(SyncState.DISABLED)
        self.next_sync_at = None
        self.last_error = reason[:500]
        self.last_error_at = at

    def reactivate(self) -> None:
        """Return a disabled provider to scheduling after new credentials were stored."""
        self.is_active = True
        if self.sync_state is SyncState.DISABLED:
            self.transition_to(SyncState.IDLE)
        else:
            self.sync_state = SyncState.IDLE
        self.error_streak = 0
        self.rate_limit_streak = 0
        self.next_sync_at = None
        self.last_error = None
        self.last_error_at = None
