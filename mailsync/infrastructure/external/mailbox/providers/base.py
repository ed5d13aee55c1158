"""Shared adapter plumbing: config, credential, id normalization and folder special use."""

from __future__ import annotations

from collections.abc import Iterable
from typing import ClassVar

from mailsync.application.dtos.credentials import AccessCredential
from mailsync.core.config import Settings, get_settings
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.enums import ProviderType
from mailsync.domain.exceptions import UnsupportedCapabilityException

# RFC 6154 special-use attributes.
_SPECIAL_USE_ATTRIBUTES = {
    "\\all": "ALL",
    "\\archive": "ARCHIVE",
    "\\drafts": "DRAFTS",
    "\\flagged": "FLAGGED",
    "\\junk": "JUNK",
    "\\sent": "SENT",
    "\\trash": "TRASH",
    "\\important": "IMPORTANT",
}
_SPECIAL_USE_NAMES = {
    "inbox": "INBOX",
    "sent": "SENT",
    "sent items": "SENT",
    "sent mail": "SENT",
    "sentitems": "SENT",
    "drafts": "DRAFTS",
    "trash": "TRASH",
    "deleted": "TRASH",
    "deleted items": "TRASH",
    "deleteditems": "TRASH",
    "spam": "JUNK",
    "junk": "JUNK",
    "junk email": "JUNK",
    "archive": "ARCHIVE",
    "starred": "FLAGGED",
    "flagged": "FLAGGED",
}


def folder_special_use(name: str, attributes: Iterable[str] = ()) -> str | None:
    """Special use from RFC 6154 attributes, else from a well-known folder name."""
    for attribute in attributes:
        special = _SPECIAL_USE_ATTRIBUTES.get(attribute.lower())
        if special:
            return special
    return _SPECIAL_USE_NAMES.get(name.strip().lower())


class BaseMailboxAdapter:
    """Base for the provider variants; subclasses implement the adapter contract."""

    PROVIDER_TYPE: ClassVar[ProviderType]

    def __init__(
        self,
        config: ProviderConfig,
        credential: AccessCredential,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.config = config
        self.credential = credential
        self.settings = settings or get_settings()

    @property
    def email(self) -> str:
        return self.config.email

    def normalize_ids(self, ids: list[str]) -> list[str]:
        """Trim, drop empties and de-duplicate, keeping first-seen order."""
        seen: dict[str, None] = {}
        for raw in ids:
            value = (raw or "").strip()
            if value:
                seen.setdefault(value, None)
        return list(seen)

    def _unsupported(self, capability: str) -> UnsupportedCapabilityException:
        return UnsupportedCapabilityException(self.PROVIDER_TYPE.value, capability)

    async def aclose(self) -> None:
        """Release network resources; adapters without any keep this no-op."""
