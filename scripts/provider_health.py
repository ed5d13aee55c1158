"""Print the health of one provider connection.

Usage:
    uv run python -m scripts.provider_health <provider_id> [--check]
--check also runs a live connection test against the provider (10s timeout).
Requires DATABASE_URL and CREDENTIAL_ENCRYPTION_KEY.
"""

import asyncio
import sys

import httpx

import mailsync.infrastructure.persistence.database as database
from mailsync.core.config import get_settings
from mailsync.core.lifespan import build_sync_engine
from mailsync.domain.exceptions import ProviderNotFoundException, SqlNotConfiguredException
from mailsync.shared.telemetry.logging import setup_logging


def _fmt(value: object) -> str:
    return "-" if value is None else str(value)


async def main() -> None:
    """Load the provider and print its presentation status."""
    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    if not args:
        print(
            "Usage: uv run python -m scripts.provider_health <provider_id> [--check]",
            file=sys.stderr,
        )
        sys.exit(1)
    provider_id = args[0]
    check = "--check" in sys.argv[1:]

    setup_logging()
    settings = get_settings()
    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
        try:
            engine = build_sync_engine(settings, http_client=client)
            health = await engine.get_provider_health(provider_id, check_connection=check)
        except SqlNotConfiguredException:
            print("AsyncSessionLocal not configured: set DATABASE_URL", file=sys.stderr)
            sys.exit(1)
        except ProviderNotFoundException:
            print(f"Provider not found: {provider_id}", file=sys.stderr)
            sys.exit(1)
        finally:
            await database.dispose_engine()

    print(f"provider:       {health.provider_id}")
    print(f"status:         {health.status.value}")
    print(f"active:         {health.is_active}")
    print(f"last synced:    {_fmt(health.last_synced_at)}")
    print(f"next sync:      {_fmt(health.next_sync_at)}")
    print(f"error streak:   {health.error_streak}")
    if health.show_error_badge:
        print(f"last error:     {_fmt(health.last_error)}")
    if check:
        print(f"connection ok:  {_fmt(health.connection_ok)}")


if __name__ == "__main__":
    asyncio.run(main())
