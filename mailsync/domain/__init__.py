"""Domain layer: entities, enums, and exceptions.

No dependencies on infrastructure or provider client libraries. Used by
application and infrastructure layers.
"""

from mailsync.domain.entities import (
    CallResult,
    ClassifiedError,
    ProviderConfig,
    ScopeSyncResult,
    SyncJob,
    SyncResult,
)
from mailsync.domain.enums import (
    ErrorCategory,
    JobPriority,
    ProviderHealthStatus,
    ProviderType,
    SubmitOutcome,
    SyncScope,
    SyncState,
    SyncType,
)
from mailsync.domain.exceptions import (
    AuthRevokedException,
    CredentialException,
    MailSyncException,
    ProviderCredentialError,
    ProviderInactiveException,
    ProviderNotFoundException,
    ValidationException,
)

__all__ = [
    # Entities
    "CallResult",
    "ClassifiedError",
    "ProviderConfig",
    "ScopeSyncResult",
    "SyncJob",
    "SyncResult",
    # Enums
    "ErrorCategory",
    "JobPriority",
    "ProviderHealthStatus",
    "ProviderType",
    "SubmitOutcome",
    "SyncScope",
    "SyncState",
    "SyncType",
    # Exceptions
    "AuthRevokedException",
    "CredentialException",
    "MailSyncException",
    "ProviderCredentialError",
    "ProviderInactiveException",
    "ProviderNotFoundException",
    "ValidationException",
]
