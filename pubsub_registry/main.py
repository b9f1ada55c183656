"""Registry service entry point."""

import asyncio
import contextlib
import logging
import signal

from pubsub_registry.config import settings
from pubsub_registry.server import RegistryServer
from pubsub_registry.store import create_store
from pubsub_registry.watchdog import notify_ready, notify_stopping, start_watchdog

logger = logging.getLogger(__name__)


def _alert(failures: int, exc: BaseException) -> None:
    logger.critical("Registry log unreachable after %d attempts: %s", failures, exc)


async def serve() -> None:
    """Run the store and REST API until SIGINT/SIGTERM."""
    store = create_store(settings, on_alert=_alert)
    server = RegistryServer(store)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await store.start()
    watchdog = None
    try:
        await server.start()
        notify_ready()
        watchdog = start_watchdog(lambda: store.healthy)
        await stop.wait()
        logger.info("Shutting down...")
        notify_stopping()
    finally:
        if watchdog is not None:
            watchdog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watchdog
        await server.stop()
        await store.close()


def main() -> None:
    """Configure logging and run the registry service."""
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level.upper()),
    )
    logger.info("Starting registry on %s (backend=%s)", settings.db_name, settings.log_backend)
    asyncio.run(serve())


if __name__ == "__main__":
    main()
