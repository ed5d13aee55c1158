"""Synced record ORM models: emails, folders, calendar events and contacts.

Each table is unique on (provider_id, external_id) so re-syncing the
same provider window upserts instead of duplicating.
"""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from mailsync.infrastructure.persistence.database import Base
from mailsync.infrastructure.persistence.models.mixins import SyncedItemModel


class SyncedEmail(SyncedItemModel, Base):
    """Email mirrored from a provider. Table: synced_email."""

    __tablename__ = "synced_email"
    __table_args__ = (
        UniqueConstraint("provider_id", "external_id", name="uq_synced_email_external"),
    )

    thread_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    from_address: Mapped[str] = mapped_column(String, nullable=False, default="")
    to_addresses: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    cc_addresses: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    subject: Mapped[str] = mapped_column(String, nullable=False, default="")
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    snippet: Mapped[str] = mapped_column(String, nullable=False, default="")
    body_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    labels: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_starred: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_attachments: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    internet_message_id: Mapped[str | None] = mapped_column(String, nullable=True)


class SyncedCalendarEvent(SyncedItemModel, Base):
    """Calendar event mirrored from a provider. Table: synced_calendar_event."""

    __tablename__ = "synced_calendar_event"
    __table_args__ = (
        UniqueConstraint("provider_id", "external_id", name="uq_synced_event_external"),
    )

    title: Mapped[str] = mapped_column(String, nullable=False, default="")
    starts_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    calendar_id: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    all_day: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    organizer: Mapped[str | None] = mapped_column(String, nullable=True)
    attendees: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    provider_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class SyncedContact(SyncedItemModel, Base):
    """Contact mirrored from a provider. Table: synced_contact."""

    __tablename__ = "synced_contact"
    __table_args__ = (
        UniqueConstraint("provider_id", "external_id", name="uq_synced_contact_external"),
    )

    display_name: Mapped[str] = mapped_column(String, nullable=False, default="")
    emails: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    phones: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    organization: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class SyncedFolder(SyncedItemModel, Base):
    """Mail folder or label mirrored from a provider. Table: synced_folder."""

    __tablename__ = "synced_folder"
    __table_args__ = (
        UniqueConstraint("provider_id", "external_id", name="uq_synced_folder_external"),
    )

    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    special_use: Mapped[str | None] = mapped_column(String(32), nullable=True)
    parent_external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    total_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    unread_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_selectable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
