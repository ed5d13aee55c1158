"""Credential DTOs: encrypted pair, short-lived plaintext handle, OAuth token set."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import SecretStr

from mailsync.domain.enums import ProviderType


@dataclass(frozen=True)
class EncryptedValue:
    """AES-256-CBC ciphertext and its IV, both hex encoded (two-field storage layout)."""

    ciphertext: str
    iv: str


@dataclass(frozen=True)
class AccessCredential:
    """In-memory handle for a usable credential.

    For OAuth providers token is the bearer access token; for generic
    providers it is the static password. SecretStr keeps it out of repr
    and log output.
    """

    provider_id: str
    provider_type: ProviderType
    token: SecretStr
    expires_at: datetime | None = None
    refreshed: bool = False

    def reveal(self) -> str:
        return self.token.get_secret_value()


@dataclass
class OAuthTokens:
    """Normalized OAuth token response (from the authorization flow or a refresh)."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    token_type: str = "Bearer"
    scope: str = ""
    provider_metadata: dict[str, Any] = field(default_factory=dict)
