"""DTOs for engine-facing operations: trigger, health, stats, persistence counts."""

from dataclasses import dataclass, field
from datetime import datetime

from mailsync.domain.enums import (
    JobPriority,
    ProviderHealthStatus,
    SubmitOutcome,
    SyncType,
)


@dataclass(frozen=True)
class UpsertCounts:
    """Rows inserted vs updated by an idempotent upsert."""

    inserted: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated


@dataclass(frozen=True)
class TriggerSyncResult:
    provider_id: str
    outcome: SubmitOutcome
    job_id: str | None = None
    sync_type: SyncType | None = None

    @property
    def enqueued(self) -> bool:
        return self.outcome.enqueued


@dataclass(frozen=True)
class ProviderHealth:
    """Presentation-facing status of one provider.

    show_error_badge is only true once error_streak crosses the configured
    threshold; a provider merely under backoff shows its last_synced_at.
    """

    provider_id: str
    status: ProviderHealthStatus
    is_active: bool
    last_synced_at: datetime | None
    next_sync_at: datetime | None
    error_streak: int
    show_error_badge: bool
    last_error: str | None = None
    connection_ok: bool | None = None


@dataclass(frozen=True)
class ProviderStatistics:
    """Aggregate provider counts from the repository."""

    total: int = 0
    active: int = 0
    never_synced: int = 0
    synced_since: int = 0
    with_errors: int = 0
    priority_distribution: dict[int, int] = field(default_factory=dict)


@dataclass(frozen=True)
class LaneStats:
    lane: JobPriority
    workers: int
    capacity: int
    queued: int
    running: int


@dataclass(frozen=True)
class DeadLetterEntry:
    """A job that ended without success and was not rescheduled by a retry."""

    job_id: str
    provider_id: str
    priority: JobPriority
    reason: str
    failed_at: datetime


@dataclass(frozen=True)
class SyncStats:
    lanes: list[LaneStats]
    providers: ProviderStatistics
    dead_letters: int
    scheduler_running: bool
