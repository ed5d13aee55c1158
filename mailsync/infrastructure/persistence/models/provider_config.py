"""ProviderConfig ORM model. Connected mailbox, encrypted credentials and scheduler state."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from mailsync.infrastructure.persistence.database import Base
from mailsync.infrastructure.persistence.models.mixins import MultiTenantModel


class ProviderConfigModel(MultiTenantModel, Base):
    """Provider config and sync state. Table: provider_config."""

    __tablename__ = "provider_config"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_type", "email", name="uq_provider_config_mailbox"),
        Index("ix_provider_config_due", "is_active", "sync_priority", "next_sync_at"),
    )

    provider_type: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str] = mapped_column(String, nullable=False, index=True)
    supports_email: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    supports_calendar: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    supports_contacts: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # AES-256-CBC ciphertext and IV, hex encoded, stored separately.
    access_token_ciphertext: Mapped[str | None] = mapped_column(String, nullable=True)
    access_token_iv: Mapped[str | None] = mapped_column(String(32), nullable=True)
    refresh_token_ciphertext: Mapped[str | None] = mapped_column(String, nullable=True)
    refresh_token_iv: Mapped[str | None] = mapped_column(String(32), nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    token_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    connection_params: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rate_limit_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_state: Mapped[str] = mapped_column(String(16), nullable=False, default="idle", index=True)
    sync_priority: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    avg_activity_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    sync_cursors: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    last_error: Mapped[str | None] = mapped_column(String(500), nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
