"""Mailbox integration: adapter factory, credential vault, OAuth refresh, error classifier."""

from mailsync.infrastructure.external.mailbox.credential_vault import CredentialVault
from mailsync.infrastructure.external.mailbox.error_classifier import (
    classify_provider_error,
    parse_retry_after,
)
from mailsync.infrastructure.external.mailbox.factory import MailboxAdapterFactory
from mailsync.infrastructure.external.mailbox.oauth_drivers import (
    GoogleOAuthDriver,
    MicrosoftOAuthDriver,
    OAuthDriver,
    OAuthTokenRefresher,
    TokenRefreshError,
)

__all__ = [
    "CredentialVault",
    "GoogleOAuthDriver",
    "MailboxAdapterFactory",
    "MicrosoftOAuthDriver",
    "OAuthDriver",
    "OAuthTokenRefresher",
    "TokenRefreshError",
    "classify_provider_error",
    "parse_retry_after",
]
