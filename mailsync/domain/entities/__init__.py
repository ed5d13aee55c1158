"""Domain entities: provider config, sync job/result, classified errors."""

from mailsync.domain.entities.classified_error import CallResult, ClassifiedError
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.entities.sync_job import ScopeSyncResult, SyncJob, SyncResult

__all__ = [
    "CallResult",
    "ClassifiedError",
    "ProviderConfig",
    "ScopeSyncResult",
    "SyncJob",
    "SyncResult",
]
