"""Token lifecycle manager: hands out currently valid access credentials.

Refresh is serialized per provider with an asyncio.Lock. Callers that
waited on the lock re-read the config and reuse the token the winner
stored, so N concurrent callers cause exactly one refresh.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

from pydantic import SecretStr

from mailsync.application.dtos.credentials import AccessCredential, OAuthTokens
from mailsync.application.interfaces.repositories import IProviderConfigRepository
from mailsync.application.interfaces.services import (
    ErrorClassifier,
    ICredentialVault,
    ITokenRefresher,
)
from mailsync.core.config import Settings, get_settings
from mailsync.domain.entities.classified_error import ClassifiedError
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.enums import ErrorCategory
from mailsync.domain.exceptions import (
    AuthRevokedException,
    ProviderCredentialError,
    ProviderNotFoundException,
)
from mailsync.shared.telemetry.logging import get_logger
from mailsync.shared.telemetry.tracing import TracedOperation
from mailsync.shared.utils.datetime import Clock, ensure_utc, utc_now

logger = get_logger(__name__)


class TokenLifecycleManager:
    """Decrypts, refreshes and persists provider credentials."""

    def __init__(
        self,
        repo: IProviderConfigRepository,
        vault: ICredentialVault,
        refresher: ITokenRefresher,
        classify: ErrorClassifier,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.repo = repo
        self.vault = vault
        self.refresher = refresher
        self.classify = classify
        self.settings = settings or get_settings()
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, provider_id: str) -> asyncio.Lock:
        lock = self._locks.get(provider_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[provider_id] = lock
        return lock

    def forget(self, provider_id: str) -> None:
        """Drop the refresh lock of a removed provider."""
        self._locks.pop(provider_id, None)

    async def _load(self, provider_id: str) -> ProviderConfig:
        config = await self.repo.get_provider_config(provider_id)
        if config is None:
            raise ProviderNotFoundException(provider_id)
        if not config.is_active or not config.has_access_credential():
            raise AuthRevokedException(
                provider_id, config.last_error or "provider has no usable credentials"
            )
        return config

    def _current_token(self, config: ProviderConfig) -> str:
        return self.vault.decrypt(config.access_token_ciphertext, config.access_token_iv)

    def _needs_refresh(
        self, config: ProviderConfig, current: str, rejected_token: str | None
    ) -> bool:
        if rejected_token is not None and rejected_token == current:
            return True
        expires_at = ensure_utc(config.token_expires_at)
        if expires_at is None:
            return False
        skew = timedelta(seconds=self.settings.token_expiry_skew_seconds)
        return expires_at - skew <= self.clock()

    def _credential(
        self, config: ProviderConfig, token: str, *, refreshed: bool = False
    ) -> AccessCredential:
        return AccessCredential(
            provider_id=config.id,
            provider_type=config.provider_type,
            token=SecretStr(token),
            expires_at=ensure_utc(config.token_expires_at),
            refreshed=refreshed,
        )

    async def get_valid_access_token(
        self, provider_id: str, *, rejected_token: str | None = None
    ) -> AccessCredential:
        """Return a credential that is valid now.

        Args:
            provider_id: Provider to resolve.
            rejected_token: The token a provider just answered 401 for; forces
                a refresh unless another caller already replaced it.

        Raises:
            ProviderNotFoundException: Unknown provider.
            AuthRevokedException: Credentials are unrecoverable (provider is
                disabled when this is raised).
            ProviderCredentialError: Refresh failed for a recoverable reason.
            CredentialException: Stored ciphertext cannot be decrypted.
        """
        config = await self._load(provider_id)
        current = self._current_token(config)
        if not config.provider_type.uses_oauth:
            return self._credential(config, current)
        if not self._needs_refresh(config, current, rejected_token):
            return self._credential(config, current)

        async with self._lock_for(provider_id):
            # Another caller may have refreshed while we waited.
            config = await self._load(provider_id)
            current = self._current_token(config)
            if not self._needs_refresh(config, current, rejected_token):
                return self._credential(config, current)
            return await self._refresh(config)

    async def _refresh(self, config: ProviderConfig) -> AccessCredential:
        refresh_token = self.vault.decrypt_optional(
            config.refresh_token_ciphertext, config.refresh_token_iv
        )
        if not refresh_token:
            await self.revoke(config.id, "no refresh token stored")
            raise AuthRevokedException(config.id, "no refresh token stored")

        async with TracedOperation(
            "token.refresh",
            {"provider_id": config.id, "provider_type": config.provider_type.value},
        ):
            try:
                async with asyncio.timeout(self.settings.token_refresh_timeout_seconds):
                    tokens = await self.refresher.refresh(config.provider_type, refresh_token)
            except TimeoutError:
                classified = ClassifiedError(
                    ErrorCategory.TRANSIENT,
                    f"token refresh exceeded {self.settings.token_refresh_timeout_seconds:g}s",
                )
                logger.warning("Token refresh timed out for provider %s", config.id)
                raise ProviderCredentialError(config.id, classified) from None
            except Exception as e:
                classified = self.classify(e)
                if classified.category is ErrorCategory.AUTH_REVOKED:
                    logger.warning(
                        "Refresh token rejected for provider %s: %s",
                        config.id,
                        classified.describe(),
                    )
                    await self.revoke(config.id, classified.describe())
                    raise AuthRevokedException(config.id, classified.message) from e
                logger.warning(
                    "Token refresh failed for provider %s: %s", config.id, classified.describe()
                )
                raise ProviderCredentialError(config.id, classified) from e

        await self._store_tokens(config, tokens, refresh_token)
        logger.info("Refreshed access token for provider %s", config.id)
        return self._credential(config, tokens.access_token, refreshed=True)

    async def _store_tokens(
        self, config: ProviderConfig, tokens: OAuthTokens, previous_refresh_token: str
    ) -> None:
        access = self.vault.encrypt(tokens.access_token)
        config.access_token_ciphertext = access.ciphertext
        config.access_token_iv = access.iv
        rotated = tokens.refresh_token or previous_refresh_token
        if rotated != previous_refresh_token:
            refresh = self.vault.encrypt(rotated)
            config.refresh_token_ciphertext = refresh.ciphertext
            config.refresh_token_iv = refresh.iv
        config.token_expires_at = tokens.expires_at
        config.token_refreshed_at = self.clock()
        await self.repo.save_provider_config(config)

    def store_initial_tokens(self, config: ProviderConfig, tokens: OAuthTokens) -> None:
        """Encrypt a freshly exchanged token pair into config (not saved)."""
        access = self.vault.encrypt(tokens.access_token)
        config.access_token_ciphertext = access.ciphertext
        config.access_token_iv = access.iv
        if tokens.refresh_token:
            refresh = self.vault.encrypt(tokens.refresh_token)
            config.refresh_token_ciphertext = refresh.ciphertext
            config.refresh_token_iv = refresh.iv
        config.token_expires_at = tokens.expires_at
        config.token_refreshed_at = self.clock()

    def store_static_credential(self, config: ProviderConfig, password: str) -> None:
        """Encrypt a generic provider's password into the access-token pair (not saved)."""
        access = self.vault.encrypt(password)
        config.access_token_ciphertext = access.ciphertext
        config.access_token_iv = access.iv
        config.refresh_token_ciphertext = None
        config.refresh_token_iv = None
        config.token_expires_at = None
        config.token_refreshed_at = self.clock()

    async def revoke(self, provider_id: str, reason: str) -> ProviderConfig | None:
        """Soft-disable provider_id: inactive, credentials nulled, state disabled."""
        config = await self.repo.get_provider_config(provider_id)
        if config is None:
            return None
        config.deactivate(reason, self.clock())
        await self.repo.save_provider_config(config)
        logger.warning("Provider %s disabled: %s", provider_id, reason)
        return config
