"""Process entry point: ``python -m abacus.main`` runs the sync scheduler until stopped."""

from __future__ import annotations

import asyncio
import logging
import signal

from abacus.config import settings
from abacus.infra.db.session import engine, init_db
from abacus.infra.logging_config import configure_logging
from abacus.infra.providers.factory import close_shared_http_client
from abacus.infra.scheduler import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)


async def run() -> None:
    configure_logging(settings.log_level_int)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # windows event loops
            pass

    try:
        logger.info("Initialising database tables...")
        await init_db()
        start_scheduler()
        logger.info("Abacus sync worker ready.")
        await stop.wait()
    finally:
        stop_scheduler()
        await close_shared_http_client()
        await engine.dispose()
        logger.info("Shutting down.")


if __name__ == "__main__":
    asyncio.run(run())
