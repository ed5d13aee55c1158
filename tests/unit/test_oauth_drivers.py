"""Refresh-token drivers, the refresher router and the adapter factory."""

from urllib.parse import parse_qs

import httpx
import pytest
from pydantic import SecretStr

from mailsync.application.dtos.credentials import AccessCredential
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.enums import ProviderType
from mailsync.infrastructure.external.mailbox.factory import MailboxAdapterFactory
from mailsync.infrastructure.external.mailbox.oauth_drivers import (
    GoogleOAuthDriver,
    MicrosoftOAuthDriver,
    OAuthTokenRefresher,
    TokenRefreshError,
)
from mailsync.infrastructure.external.mailbox.providers import (
    GenericMailboxAdapter,
    GoogleMailboxAdapter,
    MicrosoftMailboxAdapter,
)
from mailsync.shared.utils.datetime import utc_now


def _google(handler) -> GoogleOAuthDriver:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleOAuthDriver(
        "client-id", "client-secret", token_endpoint="https://oauth.test/token", http_client=http
    )


class TestGoogleDriver:
    @pytest.mark.asyncio
    async def test_refresh_posts_form_and_keeps_refresh_token(self):
        forms: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            forms.append(parse_qs(request.content.decode()))
            return httpx.Response(
                200,
                json={"access_token": "new-access", "expires_in": 3599, "scope": "mail"},
            )

        tokens = await _google(handler).refresh_access_token("refresh-1")

        assert forms[0]["grant_type"] == ["refresh_token"]
        assert forms[0]["refresh_token"] == ["refresh-1"]
        assert tokens.access_token == "new-access"
        assert tokens.refresh_token == "refresh-1"
        assert tokens.expires_at > utc_now()
        assert "access_token" not in tokens.provider_metadata
        assert tokens.provider_metadata["scope"] == "mail"

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_returned(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"access_token": "a", "refresh_token": "refresh-2", "expires_in": 60}
            )

        tokens = await _google(handler).refresh_access_token("refresh-1")

        assert tokens.refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_rejection_raises_with_raw_error_code(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={"error": "invalid_grant", "error_description": "Token has been revoked."},
            )

        with pytest.raises(TokenRefreshError) as exc_info:
            await _google(handler).refresh_access_token("refresh-1")

        error = exc_info.value
        assert error.provider_type is ProviderType.GOOGLE
        assert error.status_code == 400
        assert error.error == "invalid_grant"
        assert error.description == "Token has been revoked."

    @pytest.mark.asyncio
    async def test_throttled_refresh_carries_retry_after(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, headers={"Retry-After": "15"}, text="slow down")

        with pytest.raises(TokenRefreshError) as exc_info:
            await _google(handler).refresh_access_token("refresh-1")

        assert exc_info.value.retry_after == "15"
        assert exc_info.value.error is None
        assert exc_info.value.description == "slow down"


class _StubMsalApp:
    def __init__(self, result: dict) -> None:
        self.result = result
        self.calls: list[tuple[str, list[str]]] = []

    def acquire_token_by_refresh_token(self, refresh_token: str, scopes: list[str]) -> dict:
        self.calls.append((refresh_token, scopes))
        return self.result


class TestMicrosoftDriver:
    @pytest.mark.asyncio
    async def test_refresh_via_msal(self):
        driver = MicrosoftOAuthDriver("cid", "secret", scopes=["Mail.Read", "offline_access"])
        driver._app = _StubMsalApp(
            {"access_token": "ms-access", "refresh_token": "ms-refresh-2", "expires_in": 3600}
        )

        tokens = await driver.refresh_access_token("ms-refresh-1")

        assert driver._app.calls == [("ms-refresh-1", ["Mail.Read", "offline_access"])]
        assert tokens.access_token == "ms-access"
        assert tokens.refresh_token == "ms-refresh-2"

    @pytest.mark.asyncio
    async def test_msal_error_becomes_token_refresh_error(self):
        driver = MicrosoftOAuthDriver("cid", "secret")
        driver._app = _StubMsalApp(
            {
                "error": "invalid_grant",
                "error_description": "AADSTS70008: The refresh token has expired.",
                "error_codes": [70008],
            }
        )

        with pytest.raises(TokenRefreshError) as exc_info:
            await driver.refresh_access_token("ms-refresh-1")

        assert exc_info.value.error == "invalid_grant"
        assert exc_info.value.error_codes == [70008]


class TestRefresher:
    def test_generic_providers_have_no_driver(self, settings):
        with pytest.raises(ValueError, match="Unsupported OAuth provider"):
            OAuthTokenRefresher(settings).get_driver(ProviderType.GENERIC)

    def test_drivers_are_built_from_settings_and_cached(self, settings):
        settings.google_client_id = "google-client"
        refresher = OAuthTokenRefresher(settings)

        driver = refresher.get_driver(ProviderType.GOOGLE)

        assert isinstance(driver, GoogleOAuthDriver)
        assert driver.client_id == "google-client"
        assert driver.token_endpoint == settings.google_token_endpoint
        assert refresher.get_driver(ProviderType.GOOGLE) is driver

    @pytest.mark.asyncio
    async def test_refresh_routes_to_injected_driver(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "routed", "expires_in": 60})

        refresher = OAuthTokenRefresher(settings, drivers={ProviderType.GOOGLE: _google(handler)})

        tokens = await refresher.refresh(ProviderType.GOOGLE, "refresh-1")

        assert tokens.access_token == "routed"


class TestAdapterFactory:
    @pytest.mark.parametrize(
        ("provider_type", "adapter_class"),
        [
            (ProviderType.GOOGLE, GoogleMailboxAdapter),
            (ProviderType.MICROSOFT, MicrosoftMailboxAdapter),
            (ProviderType.GENERIC, GenericMailboxAdapter),
        ],
    )
    def test_creates_adapter_per_provider_type(self, settings, provider_type, adapter_class):
        config = ProviderConfig(
            id="p1", tenant_id="t1", provider_type=provider_type, email="owner@example.com"
        )
        credential = AccessCredential("p1", provider_type, SecretStr("secret"))

        adapter = MailboxAdapterFactory(settings)(config, credential)

        assert isinstance(adapter, adapter_class)
        assert adapter.credential is credential
        assert adapter.settings is settings

    def test_microsoft_adapter_gets_shared_http_client(self, settings):
        http = httpx.AsyncClient()
        config = ProviderConfig(
            id="p1", tenant_id="t1", provider_type=ProviderType.MICROSOFT, email="o@example.com"
        )
        credential = AccessCredential("p1", ProviderType.MICROSOFT, SecretStr("secret"))

        adapter = MailboxAdapterFactory(settings, http_client=http).create(config, credential)

        assert adapter._shared_http is http

    def test_supported_provider_types(self):
        assert set(MailboxAdapterFactory.supported_provider_types()) == set(ProviderType)
