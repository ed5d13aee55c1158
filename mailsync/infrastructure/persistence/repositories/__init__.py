"""Persistence repositories. Re-exports for dependency injection."""

from mailsync.infrastructure.persistence.repositories.provider_config_repo import (
    ProviderConfigRepository,
)
from mailsync.infrastructure.persistence.repositories.synced_item_repo import (
    SyncedItemRepository,
)

__all__ = [
    "ProviderConfigRepository",
    "SyncedItemRepository",
]
