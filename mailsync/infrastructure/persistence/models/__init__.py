"""Persistence models: ORM entities and mixins."""

from mailsync.infrastructure.persistence.models.mixins import (
    CuidMixin,
    MultiTenantModel,
    ProviderItemMixin,
    SyncedItemModel,
    TenantMixin,
    TimestampMixin,
)
from mailsync.infrastructure.persistence.models.provider_config import ProviderConfigModel
from mailsync.infrastructure.persistence.models.synced_item import (
    SyncedCalendarEvent,
    SyncedContact,
    SyncedEmail,
    SyncedFolder,
)

__all__ = [
    "CuidMixin",
    "MultiTenantModel",
    "ProviderConfigModel",
    "ProviderItemMixin",
    "SyncedCalendarEvent",
    "SyncedContact",
    "SyncedEmail",
    "SyncedFolder",
    "SyncedItemModel",
    "TenantMixin",
    "TimestampMixin",
]
