"""Engine lifespan: startup and shutdown.

Single place for all startup/shutdown logic. No business logic here, only
wiring of infrastructure (shared HTTP client, telemetry, DB engine
dispose) around a SyncEngine.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from mailsync.core.config import Settings, get_settings
from mailsync.core.engine import SyncEngine
from mailsync.infrastructure.persistence import database
from mailsync.shared.telemetry.telemetry import TelemetryConfig, get_telemetry, set_telemetry

logger = logging.getLogger(__name__)


def build_sync_engine(
    settings: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> SyncEngine:
    """Create a SyncEngine backed by PostgreSQL and the real provider clients."""
    from mailsync.infrastructure.external.mailbox import (
        CredentialVault,
        MailboxAdapterFactory,
        OAuthTokenRefresher,
        classify_provider_error,
    )
    from mailsync.infrastructure.persistence.repositories import (
        ProviderConfigRepository,
        SyncedItemRepository,
    )

    settings = settings or get_settings()
    sessions = database.get_session_factory()
    return SyncEngine(
        repo=ProviderConfigRepository(sessions),
        items=SyncedItemRepository(sessions),
        vault=CredentialVault(),
        refresher=OAuthTokenRefresher(settings, http_client=http_client),
        adapter_factory=MailboxAdapterFactory(settings, http_client=http_client),
        classify=classify_provider_error,
        settings=settings,
    )


@asynccontextmanager
async def engine_lifespan(
    settings: Settings | None = None, *, schedule: bool = True
) -> AsyncIterator[SyncEngine]:
    """Start the engine, yield it, and shut everything down on exit.

    Startup order: telemetry (if enabled), shared HTTP client, engine.
    Shutdown order: engine stop, HTTP client close, telemetry shutdown,
    SQL engine dispose.
    """
    settings = settings or get_settings()

    # ---- Startup ----
    if settings.telemetry_enabled:
        telemetry = TelemetryConfig(
            service_name=settings.app_name,
            service_version=settings.app_version,
            enabled=True,
            environment=settings.telemetry_environment,
        )
        telemetry.setup_telemetry(
            exporter_type=settings.telemetry_exporter,
            otlp_endpoint=settings.telemetry_otlp_endpoint,
            sample_rate=settings.telemetry_sample_rate,
        )
        telemetry.instrument_logging()
        set_telemetry(telemetry)
        logger.info("Telemetry initialized")

    # Shared HTTP client for Graph and token endpoint calls (connection reuse).
    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    engine = build_sync_engine(settings, http_client=http_client)

    telemetry_instance = get_telemetry()
    if telemetry_instance is not None and database.engine is not None:
        telemetry_instance.instrument_sqlalchemy(database.engine)

    engine.start(schedule=schedule)
    try:
        yield engine
    finally:
        # ---- Shutdown ----
        await engine.stop()
        await http_client.aclose()
        logger.info("Shared HTTP client closed")

        if telemetry_instance is not None:
            telemetry_instance.shutdown()
            set_telemetry(None)

        await database.dispose_engine()
        logger.info("Database engine disposed")
