"""Application interfaces (ports) implemented by infrastructure."""

from mailsync.application.interfaces.repositories import (
    IProviderConfigRepository,
    ISyncedItemRepository,
)
from mailsync.application.interfaces.services import (
    AdapterFactory,
    ErrorClassifier,
    ICancellationSource,
    ICredentialVault,
    IMailboxAdapter,
    ITokenRefresher,
)

__all__ = [
    "AdapterFactory",
    "ErrorClassifier",
    "ICancellationSource",
    "ICredentialVault",
    "IMailboxAdapter",
    "IProviderConfigRepository",
    "ISyncedItemRepository",
    "ITokenRefresher",
]
