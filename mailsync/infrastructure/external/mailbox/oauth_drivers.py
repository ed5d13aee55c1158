"""OAuth drivers: refresh-token exchange per provider.

The authorization-code exchange happens outside the engine; drivers only
turn a stored refresh token into a new access token. Failures raise
TokenRefreshError carrying the provider's raw error code so the error
classifier can tell a revoked grant from an outage.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, ClassVar

import httpx
from msal import ConfidentialClientApplication

from mailsync.application.dtos.credentials import OAuthTokens
from mailsync.core.config import Settings, get_settings
from mailsync.domain.enums import ProviderType
from mailsync.shared.telemetry.logging import get_logger
from mailsync.shared.utils.datetime import utc_now

logger = get_logger(__name__)


class TokenRefreshError(Exception):
    """Raw refresh failure from a provider token endpoint."""

    def __init__(
        self,
        provider_type: ProviderType,
        status_code: int | None,
        error: str | None,
        description: str | None = None,
        error_codes: list[int] | None = None,
        retry_after: str | None = None,
    ) -> None:
        self.provider_type = provider_type
        self.status_code = status_code
        self.error = error
        self.description = description
        self.error_codes = error_codes or []
        self.retry_after = retry_after
        super().__init__(
            f"{provider_type.value} token refresh failed: "
            f"status={status_code} error={error} {description or ''}".strip()
        )


class OAuthDriver(ABC):
    """Abstract refresh driver: one per OAuth provider type."""

    PROVIDER_NAME: ClassVar[str]
    PROVIDER_TYPE: ClassVar[ProviderType]
    _SENSITIVE_KEYS: ClassVar[frozenset[str]] = frozenset(
        {"access_token", "refresh_token", "id_token"}
    )

    def __init__(self, client_id: str, client_secret: str, timeout: float = 30.0) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """Exchange refresh_token for a new access token.

        Raises:
            TokenRefreshError: If the provider rejected the request.
        """

    def _normalize_token_response(
        self, token_data: dict[str, Any], previous_refresh_token: str
    ) -> OAuthTokens:
        """Normalize a token response; keeps the previous refresh token when none is rotated in."""
        expires_in = int(token_data.get("expires_in", 3600))
        return OAuthTokens(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token") or previous_refresh_token,
            expires_at=utc_now() + timedelta(seconds=expires_in),
            token_type=token_data.get("token_type", "Bearer"),
            scope=token_data.get("scope", ""),
            provider_metadata={
                k: v for k, v in token_data.items() if k not in self._SENSITIVE_KEYS
            },
        )


class GoogleOAuthDriver(OAuthDriver):
    """Google OAuth driver (token endpoint POST over httpx)."""

    PROVIDER_NAME = "Google"
    PROVIDER_TYPE = ProviderType.GOOGLE

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0,
        *,
        token_endpoint: str = "https://oauth2.googleapis.com/token",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(client_id, client_secret, timeout)
        self.token_endpoint = token_endpoint
        self._http = http_client

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self._http is not None:
            response = await self._http.post(self.token_endpoint, data=data, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.token_endpoint, data=data)
        if response.status_code != 200:
            error, description = _oauth_error_fields(response)
            logger.error(
                "%s token refresh failed: status=%d error=%s",
                self.PROVIDER_NAME,
                response.status_code,
                error,
            )
            raise TokenRefreshError(
                self.PROVIDER_TYPE,
                response.status_code,
                error,
                description,
                retry_after=response.headers.get("Retry-After"),
            )
        return self._normalize_token_response(response.json(), refresh_token)


class MicrosoftOAuthDriver(OAuthDriver):
    """Microsoft identity platform driver (msal confidential client)."""

    PROVIDER_NAME = "Microsoft 365"
    PROVIDER_TYPE = ProviderType.MICROSOFT

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0,
        *,
        tenant: str = "common",
        scopes: list[str] | None = None,
    ) -> None:
        super().__init__(client_id, client_secret, timeout)
        self.authority = f"https://login.microsoftonline.com/{tenant}"
        self.scopes = scopes or ["https://graph.microsoft.com/.default"]
        self._app: ConfidentialClientApplication | None = None

    def _client_app(self) -> ConfidentialClientApplication:
        if self._app is None:
            self._app = ConfidentialClientApplication(
                self.client_id,
                authority=self.authority,
                client_credential=self.client_secret,
            )
        return self._app

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        app = self._client_app()
        result: dict[str, Any] = await asyncio.to_thread(
            app.acquire_token_by_refresh_token, refresh_token, scopes=self.scopes
        )
        if "access_token" not in result:
            logger.error(
                "%s token refresh failed: error=%s codes=%s",
                self.PROVIDER_NAME,
                result.get("error"),
                result.get("error_codes"),
            )
            raise TokenRefreshError(
                self.PROVIDER_TYPE,
                result.get("status_code"),
                result.get("error"),
                result.get("error_description"),
                error_codes=list(result.get("error_codes") or []),
            )
        return self._normalize_token_response(result, refresh_token)


def _oauth_error_fields(response: httpx.Response) -> tuple[str | None, str | None]:
    """Extract (error, error_description) from an OAuth error response."""
    try:
        body = response.json()
    except ValueError:
        return None, response.text[:200] or None
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("status") or error.get("code"), error.get("message")
    return error, body.get("error_description")


class OAuthTokenRefresher:
    """Routes refresh requests to the driver for the provider type."""

    _drivers: ClassVar[dict[ProviderType, type[OAuthDriver]]] = {
        ProviderType.GOOGLE: GoogleOAuthDriver,
        ProviderType.MICROSOFT: MicrosoftOAuthDriver,
    }

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        drivers: dict[ProviderType, OAuthDriver] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._http = http_client
        self._instances: dict[ProviderType, OAuthDriver] = dict(drivers or {})

    def get_driver(self, provider_type: ProviderType) -> OAuthDriver:
        """Return (and cache) the driver configured from settings.

        Raises:
            ValueError: If provider_type has no OAuth driver (generic).
        """
        if provider_type in self._instances:
            return self._instances[provider_type]
        if provider_type not in self._drivers:
            raise ValueError(
                f"Unsupported OAuth provider: {provider_type.value}. "
                f"Supported: {', '.join(p.value for p in self._drivers)}"
            )
        s = self._settings
        if provider_type is ProviderType.GOOGLE:
            driver: OAuthDriver = GoogleOAuthDriver(
                s.google_client_id,
                s.google_client_secret.get_secret_value(),
                s.http_timeout_seconds,
                token_endpoint=s.google_token_endpoint,
                http_client=self._http,
            )
        else:
            driver = MicrosoftOAuthDriver(
                s.microsoft_client_id,
                s.microsoft_client_secret.get_secret_value(),
                s.http_timeout_seconds,
                tenant=s.microsoft_tenant,
                scopes=s.microsoft_scopes.split(),
            )
        self._instances[provider_type] = driver
        return driver

    async def refresh(self, provider_type: ProviderType, refresh_token: str) -> OAuthTokens:
        return await self.get_driver(provider_type).refresh_access_token(refresh_token)
