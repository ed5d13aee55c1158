"""Run the sync engine until SIGINT/SIGTERM.

Usage:
    uv run python -m scripts.run_sync_engine [--create-schema]
Requires DATABASE_URL and CREDENTIAL_ENCRYPTION_KEY. --create-schema creates
missing tables before the engine starts.
"""

import asyncio
import signal
import sys

import mailsync.infrastructure.persistence.database as database
from mailsync.core.config import get_settings
from mailsync.core.lifespan import engine_lifespan
from mailsync.domain.exceptions import SqlNotConfiguredException
from mailsync.shared.telemetry.logging import get_logger, setup_logging

logger = get_logger("scripts.run_sync_engine")


async def main() -> None:
    """Start the engine, wait for a stop signal, then shut down cleanly."""
    setup_logging()
    settings = get_settings()
    if "--create-schema" in sys.argv[1:]:
        try:
            await database.create_schema()
        except SqlNotConfiguredException:
            print("Set DATABASE_URL to create the schema", file=sys.stderr)
            sys.exit(1)
        print("Schema ready")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        async with engine_lifespan(settings) as engine:
            lanes = ", ".join(
                f"{lane.lane.name.lower()}={lane.workers}" for lane in engine.queue.stats()
            )
            logger.info("Sync engine running (%s)", lanes)
            await stop.wait()
            logger.info("Stop signal received, shutting down")
    except SqlNotConfiguredException:
        print("AsyncSessionLocal not configured: set DATABASE_URL", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
