"""Service interfaces (ports): mailbox adapter contract, vault, token refresher.

The mailbox adapter protocol is the single contract every provider variant
implements. Implementations raise raw provider errors; callers classify.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from mailsync.application.dtos.credentials import (
        AccessCredential,
        EncryptedValue,
        OAuthTokens,
    )
    from mailsync.application.dtos.mailbox import (
        CalendarSyncPage,
        ContactSyncPage,
        Draft,
        EmailSyncPage,
        Label,
        LabelCount,
        ListThreadsParams,
        MailFolder,
        MailMessage,
        OutgoingEmail,
        SentMessage,
        SyncCollectionParams,
        SyncEmailsParams,
        ThreadPage,
        UserInfo,
    )
    from mailsync.domain.entities.classified_error import ClassifiedError
    from mailsync.domain.entities.provider_config import ProviderConfig
    from mailsync.domain.enums import ProviderType


class IMailboxAdapter(Protocol):
    """Uniform mailbox contract over Google, Microsoft and generic providers."""

    async def get_user_info(self) -> UserInfo:
        """Return the mailbox identity."""

    async def list_threads(self, params: ListThreadsParams) -> ThreadPage:
        """Return one page of threads matching params."""

    async def get_message(self, message_id: str) -> MailMessage:
        """Return a single message with body."""

    async def send_email(self, payload: OutgoingEmail) -> SentMessage:
        """Send a new message (or a reply when thread_id/in_reply_to is set)."""

    async def sync_emails(self, params: SyncEmailsParams) -> EmailSyncPage:
        """Incremental (from cursor) or full sync of the mailbox."""

    async def sync_calendar(self, params: SyncCollectionParams) -> CalendarSyncPage:
        """Incremental or full sync of the primary calendar."""

    async def sync_contacts(self, params: SyncCollectionParams) -> ContactSyncPage:
        """Incremental or full sync of contacts."""

    async def get_labels(self) -> list[Label]:
        """Return labels / folders."""

    async def list_folders(self) -> list[MailFolder]:
        """Return the complete folder / label listing with special-use markers."""

    async def create_label(self, name: str) -> Label:
        """Create a label / folder."""

    async def mark_as_read(self, ids: list[str]) -> None:
        """Mark threads/messages read."""

    async def mark_as_unread(self, ids: list[str]) -> None:
        """Mark threads/messages unread."""

    async def create_draft(self, payload: OutgoingEmail) -> Draft:
        """Create a draft."""

    async def get_draft(self, draft_id: str) -> Draft:
        """Return a draft with its message."""

    async def send_draft(self, draft_id: str) -> SentMessage:
        """Send an existing draft."""

    async def get_email_count(self) -> list[LabelCount]:
        """Return total/unread counts per well-known folder."""

    async def test_connection(self) -> bool:
        """Side-effect-free health check; never raises for auth failures."""

    def normalize_ids(self, ids: list[str]) -> list[str]:
        """Trim, drop empties and de-duplicate ids preserving order."""

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""


class ICredentialVault(Protocol):
    """Symmetric encryption of credentials at rest."""

    def encrypt(self, plaintext: str) -> EncryptedValue:
        """Encrypt with a fresh random IV."""

    def decrypt(self, ciphertext: str, iv: str) -> str:
        """Decrypt a stored pair. Raises CredentialException if invalid."""

    def decrypt_optional(self, ciphertext: str | None, iv: str | None) -> str | None:
        """Decrypt when both fields are present, else None."""


class ITokenRefresher(Protocol):
    """Exchanges a refresh token at the provider's token endpoint."""

    async def refresh(self, provider_type: ProviderType, refresh_token: str) -> OAuthTokens:
        """Return new tokens; raises a raw provider error on failure."""


class ICancellationSource(Protocol):
    """Answers whether a provider's jobs were cancelled (provider deleted)."""

    def is_cancelled(self, provider_id: str) -> bool:
        """True while a running job of provider_id awaits its cancellation checkpoint."""


ErrorClassifier = Callable[[BaseException], "ClassifiedError"]
AdapterFactory = Callable[["ProviderConfig", "AccessCredential"], IMailboxAdapter]
