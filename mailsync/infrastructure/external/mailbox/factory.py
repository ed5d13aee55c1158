"""Mailbox adapter factory: creates the Google, Microsoft or generic adapter for a config."""

from typing import Any, ClassVar

import httpx

from mailsync.application.dtos.credentials import AccessCredential
from mailsync.application.interfaces.services import IMailboxAdapter
from mailsync.core.config import Settings, get_settings
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.enums import ProviderType
from mailsync.infrastructure.external.mailbox.providers.base import BaseMailboxAdapter
from mailsync.infrastructure.external.mailbox.providers.generic_adapter import (
    GenericMailboxAdapter,
)
from mailsync.infrastructure.external.mailbox.providers.google_adapter import (
    GoogleMailboxAdapter,
)
from mailsync.infrastructure.external.mailbox.providers.microsoft_adapter import (
    MicrosoftMailboxAdapter,
)
from mailsync.shared.telemetry.logging import get_logger

logger = get_logger(__name__)


class MailboxAdapterFactory:
    """Builds an adapter per (config, credential). Instances are callable as AdapterFactory."""

    _adapters: ClassVar[dict[ProviderType, type[BaseMailboxAdapter]]] = {
        ProviderType.GOOGLE: GoogleMailboxAdapter,
        ProviderType.MICROSOFT: MicrosoftMailboxAdapter,
        ProviderType.GENERIC: GenericMailboxAdapter,
    }

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.http_client = http_client

    def create(self, config: ProviderConfig, credential: AccessCredential) -> IMailboxAdapter:
        """Create the adapter for config.provider_type.

        Args:
            config: Provider configuration (type, mailbox, connection params).
            credential: Decrypted access token or password for this call.

        Returns:
            GoogleMailboxAdapter, MicrosoftMailboxAdapter or GenericMailboxAdapter.

        Raises:
            ValueError: If provider_type is not supported.
        """
        adapter_class = self._adapters.get(config.provider_type)
        if adapter_class is None:
            raise ValueError(
                f"Unsupported provider: {config.provider_type}. "
                f"Supported: {[t.value for t in self._adapters]}"
            )
        logger.debug("Creating %s for provider %s", adapter_class.__name__, config.id)
        kwargs: dict[str, Any] = {"settings": self.settings}
        if adapter_class is MicrosoftMailboxAdapter and self.http_client is not None:
            kwargs["http_client"] = self.http_client
        return adapter_class(config, credential, **kwargs)

    __call__ = create

    @classmethod
    def supported_provider_types(cls) -> list[ProviderType]:
        return list(cls._adapters)
