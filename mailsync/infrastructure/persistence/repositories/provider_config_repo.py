"""Provider config repository: scheduler state store backing and tenant listings."""

from __future__ import annotations

from dataclasses import fields
from datetime import datetime

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailsync.application.dtos.sync import ProviderStatistics
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.enums import ProviderType, SyncState
from mailsync.infrastructure.persistence.database import session_scope
from mailsync.infrastructure.persistence.models.provider_config import ProviderConfigModel
from mailsync.infrastructure.persistence.models.synced_item import (
    SyncedCalendarEvent,
    SyncedContact,
    SyncedEmail,
    SyncedFolder,
)
from mailsync.shared.utils.datetime import ensure_utc

_ENUM_FIELDS = {"provider_type", "sync_state"}
_DATETIME_FIELDS = {
    "token_expires_at",
    "token_refreshed_at",
    "last_synced_at",
    "last_activity_at",
    "next_sync_at",
    "last_error_at",
    "created_at",
    "updated_at",
}
# Entity fields copied onto the row as-is.
_PLAIN_FIELDS = [
    f.name
    for f in fields(ProviderConfig)
    if f.name not in _ENUM_FIELDS | {"id", "connection_params", "sync_cursors"}
]


def to_entity(row: ProviderConfigModel) -> ProviderConfig:
    """Map an ORM row to the domain entity."""
    values = {name: getattr(row, name) for name in _PLAIN_FIELDS}
    for name in _DATETIME_FIELDS:
        if values.get(name) is not None:
            values[name] = ensure_utc(values[name])
    return ProviderConfig(
        id=row.id,
        provider_type=ProviderType(row.provider_type),
        sync_state=SyncState(row.sync_state),
        connection_params=dict(row.connection_params or {}),
        sync_cursors=dict(row.sync_cursors or {}),
        **values,
    )


def apply_entity(row: ProviderConfigModel, config: ProviderConfig) -> None:
    """Copy every entity field onto row."""
    for name in _PLAIN_FIELDS:
        value = getattr(config, name)
        if name in ("created_at", "updated_at") and value is None:
            continue
        setattr(row, name, value)
    row.provider_type = config.provider_type.value
    row.sync_state = config.sync_state.value
    row.connection_params = dict(config.connection_params)
    row.sync_cursors = dict(config.sync_cursors)


class ProviderConfigRepository:
    """SQL implementation of IProviderConfigRepository. One transaction per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    async def load_due_providers(self, now: datetime, limit: int) -> list[ProviderConfig]:
        """Active, credentialed providers with next_sync_at <= now or never scheduled.

        Ordered by sync_priority then next_sync_at (nulls first).
        """
        stmt = (
            select(ProviderConfigModel)
            .where(
                ProviderConfigModel.is_active.is_(True),
                ProviderConfigModel.sync_state != SyncState.DISABLED.value,
                ProviderConfigModel.access_token_ciphertext.is_not(None),
                or_(
                    ProviderConfigModel.next_sync_at.is_(None),
                    ProviderConfigModel.next_sync_at <= now,
                ),
            )
            .order_by(
                ProviderConfigModel.sync_priority.asc(),
                ProviderConfigModel.next_sync_at.asc().nulls_first(),
            )
            .limit(limit)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return [to_entity(row) for row in result.scalars().all()]

    async def get_provider_config(self, provider_id: str) -> ProviderConfig | None:
        async with self._session() as session:
            row = await session.get(ProviderConfigModel, provider_id)
            return to_entity(row) if row is not None else None

    async def save_provider_config(self, config: ProviderConfig) -> ProviderConfig:
        """Insert or update the config (all fields)."""
        async with self._session() as session:
            row = await session.get(ProviderConfigModel, config.id)
            if row is None:
                row = ProviderConfigModel(id=config.id)
                session.add(row)
            apply_entity(row, config)
            await session.flush()
            await session.refresh(row)
            return to_entity(row)

    async def delete_provider_config(self, provider_id: str) -> bool:
        """Hard-delete the config and its synced records. Returns False if missing."""
        async with self._session() as session:
            for model in (SyncedEmail, SyncedFolder, SyncedCalendarEvent, SyncedContact):
                await session.execute(delete(model).where(model.provider_id == provider_id))
            result = await session.execute(
                delete(ProviderConfigModel).where(ProviderConfigModel.id == provider_id)
            )
            return (result.rowcount or 0) > 0

    async def list_by_tenant(self, tenant_id: str) -> list[ProviderConfig]:
        async with self._session() as session:
            result = await session.execute(
                select(ProviderConfigModel)
                .where(ProviderConfigModel.tenant_id == tenant_id)
                .order_by(ProviderConfigModel.created_at.asc(), ProviderConfigModel.id.asc())
            )
            return [to_entity(row) for row in result.scalars().all()]

    async def get_statistics(self, since: datetime) -> ProviderStatistics:
        """Aggregate counts; synced_since counts last_synced_at >= since."""
        model = ProviderConfigModel
        totals = select(
            func.count(),
            func.count().filter(model.is_active.is_(True)),
            func.count().filter(model.last_synced_at.is_(None)),
            func.count().filter(model.last_synced_at >= since),
            func.count().filter(model.error_streak > 0),
        ).select_from(model)
        priorities = (
            select(model.sync_priority, func.count())
            .where(model.is_active.is_(True))
            .group_by(model.sync_priority)
        )
        async with self._session() as session:
            total, active, never, recent, errors = (await session.execute(totals)).one()
            distribution = {
                int(priority): int(count)
                for priority, count in (await session.execute(priorities)).all()
            }
        return ProviderStatistics(
            total=int(total),
            active=int(active),
            never_synced=int(never),
            synced_since=int(recent),
            with_errors=int(errors),
            priority_distribution=distribution,
        )
