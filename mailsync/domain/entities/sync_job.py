"""SyncJob (queued unit of work) and SyncResult (outcome fed back to scheduling)."""

from dataclasses import dataclass, field
from datetime import datetime

from mailsync.domain.entities.classified_error import ClassifiedError
from mailsync.domain.enums import JobPriority, ProviderType, SyncScope, SyncType


@dataclass(frozen=True)
class SyncJob:
    """Ephemeral, immutable job payload. Workers hold no other state.

    scopes is ordered (email before calendar before contacts by default);
    cursors maps each scope to its last persisted cursor, which is None when
    that scope has never completed a sync.
    """

    job_id: str
    provider_id: str
    tenant_id: str
    provider_type: ProviderType
    sync_type: SyncType
    priority: JobPriority
    scopes: tuple[SyncScope, ...]
    cursors: dict[SyncScope, str | None]
    enqueued_at: datetime
    attempt: int = 1

    @property
    def cursor(self) -> str | None:
        """Cursor of the primary (first) scope."""
        if not self.scopes:
            return None
        return self.cursors.get(self.scopes[0])

    def sync_type_for(self, scope: SyncScope) -> SyncType:
        """Incremental needs a cursor; a scope without one always runs full."""
        if self.sync_type is SyncType.INCREMENTAL and self.cursors.get(scope):
            return SyncType.INCREMENTAL
        return SyncType.FULL


@dataclass
class ScopeSyncResult:
    """Outcome of syncing one scope of a job."""

    scope: SyncScope
    sync_type: SyncType
    synced: int = 0
    new_items: int = 0
    deleted: int = 0
    next_cursor: str | None = None
    full_resync: bool = False


@dataclass
class SyncResult:
    """Outcome of a whole job (transient, never persisted)."""

    provider_id: str
    job_id: str
    scopes: dict[SyncScope, ScopeSyncResult] = field(default_factory=dict)
    error: ClassifiedError | None = None
    cancelled: bool = False
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.cancelled

    def _synced(self, scope: SyncScope) -> int:
        result = self.scopes.get(scope)
        return result.synced if result else 0

    @property
    def emails_synced(self) -> int:
        return self._synced(SyncScope.EMAIL)

    @property
    def events_synced(self) -> int:
        return self._synced(SyncScope.CALENDAR)

    @property
    def contacts_synced(self) -> int:
        return self._synced(SyncScope.CONTACTS)

    @property
    def new_items(self) -> int:
        return sum(r.new_items for r in self.scopes.values())

    @property
    def next_cursors(self) -> dict[str, str]:
        """Cursors advanced by completed scopes, keyed by scope value."""
        return {
            scope.value: result.next_cursor
            for scope, result in self.scopes.items()
            if result.next_cursor
        }

    @property
    def next_cursor(self) -> str | None:
        """Cursor of the email scope (or the first completed scope)."""
        email = self.scopes.get(SyncScope.EMAIL)
        if email is not None:
            return email.next_cursor
        for result in self.scopes.values():
            return result.next_cursor
        return None
