"""Synced record repository: idempotent upserts keyed on (provider_id, external_id).

Uses PostgreSQL INSERT ... ON CONFLICT DO UPDATE; the returned
``xmax = 0`` flag tells inserted rows apart from updated ones.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import delete, func, literal_column
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailsync.application.dtos.mailbox import CalendarEvent, Contact, MailFolder, MailMessage
from mailsync.application.dtos.sync import UpsertCounts
from mailsync.infrastructure.persistence.database import session_scope
from mailsync.infrastructure.persistence.models.synced_item import (
    SyncedCalendarEvent,
    SyncedContact,
    SyncedEmail,
    SyncedFolder,
)
from mailsync.shared.utils.generators import generate_cuid

UPSERT_CHUNK = 500
_KEY = ("provider_id", "external_id")
# Never overwritten on conflict.
_IMMUTABLE = {"id", "tenant_id", "provider_id", "external_id", "created_at"}


def _dedupe(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Last row wins per external_id; ON CONFLICT cannot touch one row twice per statement."""
    by_id: dict[str, dict[str, Any]] = {}
    for row in rows:
        by_id[row["external_id"]] = row
    return list(by_id.values())


def email_row(tenant_id: str, provider_id: str, item: MailMessage) -> dict[str, Any]:
    return {
        "id": generate_cuid(),
        "tenant_id": tenant_id,
        "provider_id": provider_id,
        "external_id": item.external_id,
        "thread_id": item.thread_id,
        "from_address": item.from_address,
        "to_addresses": list(item.to_addresses),
        "cc_addresses": list(item.cc_addresses),
        "subject": item.subject,
        "received_at": item.received_at,
        "snippet": item.snippet,
        "body_text": item.body_text,
        "body_html": item.body_html,
        "labels": list(item.labels),
        "is_read": item.is_read,
        "is_starred": item.is_starred,
        "has_attachments": item.has_attachments,
        "internet_message_id": item.internet_message_id,
        "provider_metadata": dict(item.provider_metadata),
    }


def folder_row(tenant_id: str, provider_id: str, item: MailFolder) -> dict[str, Any]:
    return {
        "id": generate_cuid(),
        "tenant_id": tenant_id,
        "provider_id": provider_id,
        "external_id": item.external_id,
        "name": item.name,
        "special_use": item.special_use,
        "parent_external_id": item.parent_id,
        "total_count": item.total_count,
        "unread_count": item.unread_count,
        "is_selectable": item.is_selectable,
    }


def event_row(tenant_id: str, provider_id: str, item: CalendarEvent) -> dict[str, Any]:
    return {
        "id": generate_cuid(),
        "tenant_id": tenant_id,
        "provider_id": provider_id,
        "external_id": item.external_id,
        "title": item.title,
        "starts_at": item.starts_at,
        "ends_at": item.ends_at,
        "calendar_id": item.calendar_id,
        "description": item.description,
        "location": item.location,
        "all_day": item.all_day,
        "status": item.status,
        "organizer": item.organizer,
        "attendees": list(item.attendees),
        "provider_updated_at": item.updated_at,
        "provider_metadata": dict(item.provider_metadata),
    }


def contact_row(tenant_id: str, provider_id: str, item: Contact) -> dict[str, Any]:
    return {
        "id": generate_cuid(),
        "tenant_id": tenant_id,
        "provider_id": provider_id,
        "external_id": item.external_id,
        "display_name": item.display_name,
        "emails": list(item.emails),
        "phones": list(item.phones),
        "organization": item.organization,
        "provider_updated_at": item.updated_at,
        "provider_metadata": dict(item.provider_metadata),
    }


class SyncedItemRepository:
    """SQL implementation of ISyncedItemRepository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    async def _upsert(self, model: Any, rows: list[dict[str, Any]]) -> UpsertCounts:
        rows = _dedupe(rows)
        if not rows:
            return UpsertCounts()
        inserted = updated = 0
        async with session_scope(self._session_factory) as session:
            for start in range(0, len(rows), UPSERT_CHUNK):
                chunk = rows[start : start + UPSERT_CHUNK]
                stmt = insert(model).values(chunk)
                changes = {
                    name: stmt.excluded[name] for name in chunk[0] if name not in _IMMUTABLE
                }
                changes["updated_at"] = func.now()
                stmt = stmt.on_conflict_do_update(index_elements=list(_KEY), set_=changes)
                result = await session.execute(
                    stmt.returning(literal_column("(xmax = 0)").label("inserted"))
                )
                for (was_inserted,) in result.all():
                    if was_inserted:
                        inserted += 1
                    else:
                        updated += 1
        return UpsertCounts(inserted=inserted, updated=updated)

    async def _delete(self, model: Any, provider_id: str, external_ids: list[str]) -> int:
        ids = sorted(set(external_ids))
        if not ids:
            return 0
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                delete(model).where(model.provider_id == provider_id, model.external_id.in_(ids))
            )
            return result.rowcount or 0

    async def upsert_emails(
        self, tenant_id: str, provider_id: str, items: list[MailMessage]
    ) -> UpsertCounts:
        return await self._upsert(
            SyncedEmail, [email_row(tenant_id, provider_id, i) for i in items]
        )

    async def upsert_events(
        self, tenant_id: str, provider_id: str, items: list[CalendarEvent]
    ) -> UpsertCounts:
        return await self._upsert(
            SyncedCalendarEvent, [event_row(tenant_id, provider_id, i) for i in items]
        )

    async def upsert_contacts(
        self, tenant_id: str, provider_id: str, items: list[Contact]
    ) -> UpsertCounts:
        return await self._upsert(
            SyncedContact, [contact_row(tenant_id, provider_id, i) for i in items]
        )

    async def delete_emails(self, provider_id: str, external_ids: list[str]) -> int:
        return await self._delete(SyncedEmail, provider_id, external_ids)

    async def delete_events(self, provider_id: str, external_ids: list[str]) -> int:
        return await self._delete(SyncedCalendarEvent, provider_id, external_ids)

    async def delete_contacts(self, provider_id: str, external_ids: list[str]) -> int:
        return await self._delete(SyncedContact, provider_id, external_ids)

    async def upsert_folders(
        self, tenant_id: str, provider_id: str, items: list[MailFolder]
    ) -> UpsertCounts:
        return await self._upsert(
            SyncedFolder, [folder_row(tenant_id, provider_id, i) for i in items]
        )

    async def delete_folders_except(self, provider_id: str, keep_ids: list[str]) -> int:
        """Delete the provider's folders missing from a complete listing."""
        async with session_scope(self._session_factory) as session:
            stmt = delete(SyncedFolder).where(SyncedFolder.provider_id == provider_id)
            if keep_ids:
                stmt = stmt.where(SyncedFolder.external_id.not_in(sorted(set(keep_ids))))
            result = await session.execute(stmt)
            return result.rowcount or 0
