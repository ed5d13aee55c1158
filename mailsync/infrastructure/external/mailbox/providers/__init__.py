"""Mailbox adapters: Google, Microsoft, generic IMAP/SMTP/CalDAV."""

from mailsync.infrastructure.external.mailbox.providers.base import BaseMailboxAdapter
from mailsync.infrastructure.external.mailbox.providers.caldav_client import CalDavClient
from mailsync.infrastructure.external.mailbox.providers.generic_adapter import (
    GenericMailboxAdapter,
)
from mailsync.infrastructure.external.mailbox.providers.google_adapter import (
    GoogleMailboxAdapter,
    HistoryExpiredError,
)
from mailsync.infrastructure.external.mailbox.providers.imap_errors import ImapCommandError
from mailsync.infrastructure.external.mailbox.providers.microsoft_adapter import (
    DeltaExpiredError,
    MicrosoftMailboxAdapter,
)

__all__ = [
    "BaseMailboxAdapter",
    "CalDavClient",
    "DeltaExpiredError",
    "GenericMailboxAdapter",
    "GoogleMailboxAdapter",
    "HistoryExpiredError",
    "ImapCommandError",
    "MicrosoftMailboxAdapter",
]
