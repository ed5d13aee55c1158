"""Repository interfaces (ports) for the application layer.

Protocols define contracts that infrastructure implementations must fulfill (DIP).
All types reference domain entities or application DTOs only; no infrastructure imports.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from mailsync.application.dtos.mailbox import CalendarEvent, Contact, MailFolder, MailMessage
    from mailsync.application.dtos.sync import ProviderStatistics, UpsertCounts
    from mailsync.domain.entities.provider_config import ProviderConfig


class IProviderConfigRepository(Protocol):
    """Protocol for provider config persistence (scheduler state store backing)."""

    async def load_due_providers(self, now: datetime, limit: int) -> list[ProviderConfig]:
        """Return active providers with next_sync_at <= now or never scheduled.

        Ordered by sync_priority then next_sync_at (nulls first).
        """

    async def get_provider_config(self, provider_id: str) -> ProviderConfig | None:
        """Return provider config by id, or None."""

    async def save_provider_config(self, config: ProviderConfig) -> ProviderConfig:
        """Insert or update the config (all fields)."""

    async def delete_provider_config(self, provider_id: str) -> bool:
        """Hard-delete the config and its synced records. Returns False if missing."""

    async def list_by_tenant(self, tenant_id: str) -> list[ProviderConfig]:
        """Return all configs for tenant."""

    async def get_statistics(self, since: datetime) -> ProviderStatistics:
        """Return aggregate counts; synced_since counts last_synced_at >= since."""


class ISyncedItemRepository(Protocol):
    """Protocol for synced mailbox records. Upserts key on (provider_id, external_id)."""

    async def upsert_emails(
        self, tenant_id: str, provider_id: str, items: list[MailMessage]
    ) -> UpsertCounts:
        """Insert new or update existing email records."""

    async def upsert_events(
        self, tenant_id: str, provider_id: str, items: list[CalendarEvent]
    ) -> UpsertCounts:
        """Insert new or update existing calendar event records."""

    async def upsert_contacts(
        self, tenant_id: str, provider_id: str, items: list[Contact]
    ) -> UpsertCounts:
        """Insert new or update existing contact records."""

    async def delete_emails(self, provider_id: str, external_ids: list[str]) -> int:
        """Delete email records removed at the provider. Returns rows deleted."""

    async def delete_events(self, provider_id: str, external_ids: list[str]) -> int:
        """Delete calendar event records removed at the provider."""

    async def delete_contacts(self, provider_id: str, external_ids: list[str]) -> int:
        """Delete contact records removed at the provider."""

    async def upsert_folders(
        self, tenant_id: str, provider_id: str, items: list[MailFolder]
    ) -> UpsertCounts:
        """Insert new or update existing folder records."""

    async def delete_folders_except(self, provider_id: str, keep_ids: list[str]) -> int:
        """Delete the provider's folders whose external_id is not in keep_ids."""
