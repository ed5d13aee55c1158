"""SQLAlchemy mixins for common model patterns.

Provides: CuidMixin, TenantMixin, TimestampMixin, ProviderItemMixin and
the combined MultiTenantModel and SyncedItemModel.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, declared_attr, mapped_column
from sqlalchemy.sql import func

from mailsync.shared.utils.generators import generate_cuid


class CuidMixin:
    """Mixin for models using CUID as primary key. Provides id with default generate_cuid."""

    @declared_attr
    def id(cls) -> Mapped[str]:
        return mapped_column(String, primary_key=True, default=generate_cuid)


class TenantMixin:
    """Mixin for multi-tenant models. Tenants live outside this service, so no FK."""

    @declared_attr
    def tenant_id(cls) -> Mapped[str]:
        return mapped_column(String, nullable=False, index=True)


class TimestampMixin:
    """Mixin for created_at and updated_at (server defaults, timezone-aware)."""

    @declared_attr
    def created_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True), server_default=func.now(), nullable=False
        )

    @declared_attr
    def updated_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True),
            server_default=func.now(),
            onupdate=func.now(),
            nullable=False,
        )


class ProviderItemMixin:
    """Mixin for records mirrored from a provider: provider_id FK plus the provider's id."""

    @declared_attr
    def provider_id(cls) -> Mapped[str]:
        return mapped_column(
            String,
            ForeignKey("provider_config.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )

    @declared_attr
    def external_id(cls) -> Mapped[str]:
        return mapped_column(String, nullable=False)

    @declared_attr
    def provider_metadata(cls) -> Mapped[dict[str, Any] | None]:
        return mapped_column(JSON, nullable=True)


class MultiTenantModel(CuidMixin, TenantMixin, TimestampMixin):
    """Combined mixin: CUID + tenant_id + created_at/updated_at."""

    __abstract__ = True


class SyncedItemModel(MultiTenantModel, ProviderItemMixin):
    """Combined mixin for synced emails, events and contacts."""

    __abstract__ = True
