"""Provider-agnostic DTOs exchanged with mailbox adapters (no dependency on ORM)."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mailsync.domain.enums import SyncType


@dataclass(frozen=True)
class UserInfo:
    """Identity of the connected mailbox."""

    email: str
    name: str | None = None
    provider_user_id: str | None = None


@dataclass
class ListThreadsParams:
    """Thread listing filter. page_token is the adapter's opaque paging token."""

    label_ids: list[str] = field(default_factory=list)
    query: str | None = None
    max_results: int = 50
    page_token: str | None = None
    unread_only: bool = False


@dataclass(frozen=True)
class ThreadSummary:
    id: str
    snippet: str = ""
    subject: str | None = None
    last_message_at: datetime | None = None
    message_count: int | None = None


@dataclass
class ThreadPage:
    threads: list[ThreadSummary]
    next_page_token: str | None = None
    result_size_estimate: int | None = None


@dataclass
class MailMessage:
    """Universal email message structure (provider-agnostic).

    external_id is the provider's stable message id and, together with the
    provider id, the upsert key for persistence.
    """

    external_id: str
    thread_id: str | None
    from_address: str
    to_addresses: list[str]
    subject: str
    received_at: datetime
    cc_addresses: list[str] = field(default_factory=list)
    snippet: str = ""
    body_text: str | None = None
    body_html: str | None = None
    labels: list[str] = field(default_factory=list)
    is_read: bool = False
    is_starred: bool = False
    has_attachments: bool = False
    internet_message_id: str | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class OutgoingEmail:
    """Payload for send_email and create_draft."""

    to: list[str]
    subject: str
    body_text: str = ""
    body_html: str | None = None
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    thread_id: str | None = None
    in_reply_to: str | None = None


@dataclass(frozen=True)
class SentMessage:
    id: str
    thread_id: str | None = None


@dataclass
class Draft:
    id: str
    message: MailMessage | None = None


@dataclass(frozen=True)
class Label:
    """Gmail label, Graph mail folder or IMAP mailbox."""

    id: str
    name: str
    type: str = "user"


@dataclass(frozen=True)
class MailFolder:
    """Folder record synced with the email scope.

    external_id is the Gmail label id, Graph folder id or IMAP mailbox path.
    special_use is INBOX, SENT, DRAFTS, TRASH, JUNK, ARCHIVE, FLAGGED, ALL or
    IMPORTANT when the provider marks the folder as such.
    """

    external_id: str
    name: str
    special_use: str | None = None
    parent_id: str | None = None
    total_count: int | None = None
    unread_count: int | None = None
    is_selectable: bool = True


@dataclass(frozen=True)
class LabelCount:
    label: str
    total: int
    unread: int = 0


@dataclass
class SyncEmailsParams:
    sync_type: SyncType
    cursor: str | None = None
    max_messages: int | None = None


@dataclass
class SyncCollectionParams:
    """Params for calendar and contacts sync (same cursor semantics as email)."""

    sync_type: SyncType
    cursor: str | None = None
    max_items: int | None = None


@dataclass
class EmailSyncPage:
    """Messages changed since the cursor, removed ids and the cursor to store next.

    full_resync is set when an incremental request fell back to a full sync
    (expired history id, invalid delta link, UIDVALIDITY change).
    """

    messages: list[MailMessage]
    next_cursor: str | None
    deleted_ids: list[str] = field(default_factory=list)
    full_resync: bool = False
    # Complete folder listing taken with the page; None when not fetched.
    folders: list[MailFolder] | None = None


@dataclass
class CalendarEvent:
    external_id: str
    title: str
    starts_at: datetime | None
    ends_at: datetime | None
    calendar_id: str | None = None
    description: str | None = None
    location: str | None = None
    all_day: bool = False
    status: str | None = None
    organizer: str | None = None
    attendees: list[str] = field(default_factory=list)
    updated_at: datetime | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CalendarSyncPage:
    events: list[CalendarEvent]
    next_cursor: str | None
    deleted_ids: list[str] = field(default_factory=list)
    full_resync: bool = False


@dataclass
class Contact:
    external_id: str
    display_name: str
    emails: list[str] = field(default_factory=list)
    phones: list[str] = field(default_factory=list)
    organization: str | None = None
    updated_at: datetime | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ContactSyncPage:
    contacts: list[Contact]
    next_cursor: str | None
    deleted_ids: list[str] = field(default_factory=list)
    full_resync: bool = False
