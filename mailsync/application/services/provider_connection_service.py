"""Provider connection lifecycle: connect, reconnect, disconnect.

Creates ProviderConfig rows from a finished OAuth handshake or validated
IMAP/SMTP/CalDAV credentials, and keeps exactly one default provider per
tenant per capability whenever the capability flags allow it.
"""

from __future__ import annotations

import asyncio
import itertools
from datetime import UTC, datetime
from typing import Any

from pydantic import SecretStr

from mailsync.application.dtos.credentials import AccessCredential, OAuthTokens
from mailsync.application.interfaces.repositories import IProviderConfigRepository
from mailsync.application.interfaces.services import AdapterFactory
from mailsync.application.services.job_queue import PriorityJobQueue
from mailsync.application.services.scheduler_state import SchedulerStateStore
from mailsync.application.services.token_lifecycle_manager import TokenLifecycleManager
from mailsync.core.config import Settings, get_settings
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.enums import ProviderType, SyncScope
from mailsync.domain.exceptions import ProviderNotFoundException, ValidationException
from mailsync.shared.telemetry.logging import get_logger
from mailsync.shared.utils.datetime import Clock, utc_now
from mailsync.shared.utils.generators import generate_cuid

logger = get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=UTC)
REQUIRED_GENERIC_PARAMS = ("imap_server", "smtp_server")


def _disjoint_selections(configs: list[ProviderConfig]):
    """Every combination of configs with pairwise disjoint, non-empty capabilities."""
    candidates = [c for c in configs if c.capabilities]
    for size in range(1, len(SyncScope) + 1):
        for combo in itertools.combinations(candidates, size):
            covered = frozenset().union(*(c.capabilities for c in combo))
            if len(covered) == sum(len(c.capabilities) for c in combo):
                yield combo, covered


def rebalance_defaults(
    configs: list[ProviderConfig], preferred_id: str | None = None
) -> list[ProviderConfig]:
    """Recompute is_default: one default per capability, none left uncovered.

    Picks the set of configs with disjoint capabilities that covers the most
    capabilities the tenant has. Ties go to the set ranked earliest by
    preference: preferred first, then current defaults, then oldest. A
    capability is left without a default only when no disjoint choice can
    cover it. Returns the configs whose flag changed.
    """
    ordered = sorted(
        configs,
        key=lambda c: (c.id != preferred_id, not c.is_default, c.created_at or _EPOCH, c.id),
    )
    rank = {c.id: i for i, c in enumerate(ordered)}
    best_key: tuple | None = None
    chosen: set[str] = set()
    for combo, covered in _disjoint_selections(ordered):
        key = (-len(covered), tuple(rank[c.id] for c in combo))
        if best_key is None or key < best_key:
            best_key = key
            chosen = {c.id for c in combo}
    changed = []
    for config in ordered:
        should_default = config.id in chosen
        if config.is_default != should_default:
            config.is_default = should_default
            changed.append(config)
    return changed


class ProviderConnectionService:
    """Connects, reconnects and removes providers for a tenant."""

    def __init__(
        self,
        repo: IProviderConfigRepository,
        tokens: TokenLifecycleManager,
        adapter_factory: AdapterFactory,
        queue: PriorityJobQueue,
        state: SchedulerStateStore,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.repo = repo
        self.tokens = tokens
        self.adapter_factory = adapter_factory
        self.queue = queue
        self.state = state
        self.settings = settings or get_settings()
        self.clock = clock

    async def connect_oauth_provider(
        self,
        tenant_id: str,
        provider_type: ProviderType,
        email: str,
        tokens: OAuthTokens,
        *,
        supports_email: bool = True,
        supports_calendar: bool = False,
        supports_contacts: bool = False,
        make_default: bool = False,
    ) -> ProviderConfig:
        """Store the token pair from a completed authorization-code exchange.

        An existing config for the same tenant, type and mailbox is
        reconnected in place instead of duplicated.

        Raises:
            ValidationException: provider_type is not an OAuth provider or the
                token set has no access token.
        """
        if not provider_type.uses_oauth:
            raise ValidationException(
                f"{provider_type.value} does not use OAuth", field="provider_type"
            )
        if not tokens.access_token:
            raise ValidationException("Access token is required", field="access_token")
        existing = await self._find(tenant_id, provider_type, email)
        if existing is not None:
            return await self.reconnect_provider(existing.id, tokens=tokens)

        now = self.clock()
        config = ProviderConfig(
            id=generate_cuid(),
            tenant_id=tenant_id,
            provider_type=provider_type,
            email=email.strip().lower(),
            supports_email=supports_email,
            supports_calendar=supports_calendar,
            supports_contacts=supports_contacts,
            created_at=now,
            updated_at=now,
        )
        self.tokens.store_initial_tokens(config, tokens)
        return await self._create(config, make_default)

    async def connect_generic_provider(
        self,
        tenant_id: str,
        email: str,
        password: str,
        connection_params: dict[str, Any],
        *,
        supports_calendar: bool = False,
        make_default: bool = False,
    ) -> ProviderConfig:
        """Validate IMAP/SMTP (and CalDAV) credentials and store the provider.

        Raises:
            ValidationException: Missing params or test_connection failed.
        """
        params = dict(connection_params)
        for key in REQUIRED_GENERIC_PARAMS:
            if not params.get(key):
                raise ValidationException(f"{key} is required", field=key)
        if supports_calendar and not params.get("caldav_url"):
            raise ValidationException(
                "caldav_url is required for calendar sync", field="caldav_url"
            )
        if not password:
            raise ValidationException("Password is required", field="password")
        params.setdefault("username", email)

        now = self.clock()
        config = ProviderConfig(
            id=generate_cuid(),
            tenant_id=tenant_id,
            provider_type=ProviderType.GENERIC,
            email=email.strip().lower(),
            supports_email=True,
            supports_calendar=supports_calendar,
            connection_params=params,
            created_at=now,
            updated_at=now,
        )
        if not await self.check_credentials(config, password):
            raise ValidationException(
                "Could not connect with the supplied server settings and credentials",
                field="connection_params",
            )
        self.tokens.store_static_credential(config, password)
        return await self._create(config, make_default)

    async def check_credentials(self, config: ProviderConfig, secret: str) -> bool:
        """Run the adapter's test_connection with a plaintext secret (not stored)."""
        credential = AccessCredential(
            provider_id=config.id,
            provider_type=config.provider_type,
            token=SecretStr(secret),
        )
        adapter = self.adapter_factory(config, credential)
        try:
            async with asyncio.timeout(self.settings.health_check_timeout_seconds):
                return await adapter.test_connection()
        except TimeoutError:
            logger.warning("Connection test timed out for %s", config.email)
            return False
        finally:
            await adapter.aclose()

    async def reconnect_provider(
        self,
        provider_id: str,
        *,
        tokens: OAuthTokens | None = None,
        password: str | None = None,
    ) -> ProviderConfig:
        """Replace credentials and return a disabled provider to scheduling.

        Raises:
            ProviderNotFoundException: Unknown provider_id.
            ValidationException: Wrong credential kind for the provider type or
                the new password failed the connection test.
        """
        config = await self.repo.get_provider_config(provider_id)
        if config is None:
            raise ProviderNotFoundException(provider_id)
        if config.provider_type.uses_oauth:
            if tokens is None or not tokens.access_token:
                raise ValidationException("OAuth tokens are required", field="tokens")
            self.tokens.store_initial_tokens(config, tokens)
        else:
            if not password:
                raise ValidationException("Password is required", field="password")
            if not await self.check_credentials(config, password):
                raise ValidationException(
                    "Could not connect with the supplied credentials", field="password"
                )
            self.tokens.store_static_credential(config, password)
        config.reactivate()
        config.updated_at = self.clock()
        saved = await self.repo.save_provider_config(config)
        self.queue.restore(provider_id)
        logger.info("Provider %s reconnected", provider_id)
        return saved

    async def disconnect_provider(self, provider_id: str) -> bool:
        """Cancel in-flight work, hard-delete the provider and re-balance defaults.

        Returns False when the provider did not exist.
        """
        config = await self.repo.get_provider_config(provider_id)
        if config is None:
            return False
        self.queue.cancel_provider(provider_id)
        deleted = await self.repo.delete_provider_config(provider_id)
        self.tokens.forget(provider_id)
        self.state.forget(provider_id)
        if deleted:
            await self._save_defaults(config.tenant_id)
            logger.info("Provider %s disconnected", provider_id)
        return deleted

    async def set_default(self, provider_id: str) -> ProviderConfig:
        """Make provider_id the tenant default for its capabilities.

        Raises:
            ProviderNotFoundException: Unknown provider_id.
            ValidationException: Another provider is the only one that can
                cover a capability this provider would take over.
        """
        config = await self.repo.get_provider_config(provider_id)
        if config is None:
            raise ProviderNotFoundException(provider_id)
        configs = await self.repo.list_by_tenant(config.tenant_id)
        changed = rebalance_defaults(configs, preferred_id=provider_id)
        target = next((c for c in configs if c.id == provider_id), config)
        if not target.is_default:
            raise ValidationException(
                f"Provider {provider_id} cannot be the default without leaving "
                "another capability with no default",
                field="provider_id",
            )
        await self._save_changed(changed)
        refreshed = await self.repo.get_provider_config(provider_id)
        return refreshed or config

    async def _find(
        self, tenant_id: str, provider_type: ProviderType, email: str
    ) -> ProviderConfig | None:
        wanted = email.strip().lower()
        for config in await self.repo.list_by_tenant(tenant_id):
            if config.provider_type is provider_type and config.email.lower() == wanted:
                return config
        return None

    async def _create(self, config: ProviderConfig, make_default: bool) -> ProviderConfig:
        await self.repo.save_provider_config(config)
        preferred = config.id if make_default else None
        await self._save_defaults(config.tenant_id, preferred_id=preferred)
        logger.info(
            "Connected %s provider %s for tenant %s",
            config.provider_type.value,
            config.id,
            config.tenant_id,
        )
        saved = await self.repo.get_provider_config(config.id)
        return saved or config

    async def _save_defaults(self, tenant_id: str, preferred_id: str | None = None) -> None:
        configs = await self.repo.list_by_tenant(tenant_id)
        await self._save_changed(rebalance_defaults(configs, preferred_id))

    async def _save_changed(self, changed: list[ProviderConfig]) -> None:
        for config in changed:
            config.updated_at = self.clock()
            await self.repo.save_provider_config(config)
