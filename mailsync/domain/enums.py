"""Domain enumerations for provider synchronization."""

from enum import Enum

from mailsync.shared.enums import _ValuesMixin


class ProviderType(_ValuesMixin, str, Enum):
    """Closed set of mailbox provider variants."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"
    GENERIC = "generic"

    @property
    def uses_oauth(self) -> bool:
        """True for providers whose access token is refreshed via OAuth."""
        return self is not ProviderType.GENERIC


class SyncScope(_ValuesMixin, str, Enum):
    """Capability category a sync job covers."""

    EMAIL = "email"
    CALENDAR = "calendar"
    CONTACTS = "contacts"


class SyncType(_ValuesMixin, str, Enum):
    """Incremental (cursor-based) or full (paginate from start)."""

    INCREMENTAL = "incremental"
    FULL = "full"


class JobPriority(_ValuesMixin, str, Enum):
    """Worker pool lane. Lower rank runs first."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def from_rank(cls, rank: int) -> "JobPriority":
        """Return the lane for rank, clamped to [HIGH, LOW]."""
        ordered = list(cls)
        return ordered[max(0, min(rank, len(ordered) - 1))]


_PRIORITY_RANK = {JobPriority.HIGH: 0, JobPriority.NORMAL: 1, JobPriority.LOW: 2}


class SyncState(_ValuesMixin, str, Enum):
    """Per-provider scheduler state machine."""

    IDLE = "idle"
    DUE = "due"
    ENQUEUED = "enqueued"
    RUNNING = "running"
    BACKOFF = "backoff"
    DISABLED = "disabled"


class ErrorCategory(_ValuesMixin, str, Enum):
    """Classified failure taxonomy that drives retry and scheduling decisions."""

    AUTH_EXPIRED = "auth_expired"
    AUTH_REVOKED = "auth_revoked"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class SubmitOutcome(_ValuesMixin, str, Enum):
    """Result of offering a job to the priority queue."""

    ACCEPTED = "accepted"
    SUPERSEDED = "superseded"
    DUPLICATE = "duplicate"
    SATURATED = "saturated"
    CANCELLED = "cancelled"

    @property
    def enqueued(self) -> bool:
        return self in (SubmitOutcome.ACCEPTED, SubmitOutcome.SUPERSEDED)


class ProviderHealthStatus(_ValuesMixin, str, Enum):
    """User-visible provider status."""

    HEALTHY = "healthy"
    PENDING = "pending"
    SYNCING = "syncing"
    BACKOFF = "backoff"
    ERROR = "error"
    NEEDS_RECONNECTION = "needs_reconnection"
