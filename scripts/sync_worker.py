"""
Standalone marketplace sync worker.

Runs the same claim/reconcile loop as the in-process pool, for deployments
that keep the web process free of outbound marketplace traffic
(set SYNC_WORKERS_ENABLED=false on the API in that case).
"""

import asyncio
import logging
import os
import signal
from typing import Any

from marketsync.core.config import get_settings
from marketsync.core.logging_config import configure_logging
from marketsync.database import async_session
from marketsync.integrations.setup import build_collaborators, build_marketplace_adapters
from marketsync.services.sync_worker import SyncWorker, SyncWorkerPool

logger = logging.getLogger("sync_worker")

WORKER_COUNT = int(os.environ.get("SYNC_WORKER_PROCESS_COUNT", "2"))

_stop_event: asyncio.Event = None
_shutdown_requested = False


def _handle_signal(*_: Any) -> None:
    global _shutdown_requested
    if _shutdown_requested:
        # Second signal = force exit
        logger.warning("Forced shutdown requested")
        raise SystemExit(1)
    _shutdown_requested = True
    logger.info("Shutdown requested - will exit after the current batch completes")
    if _stop_event is not None:
        _stop_event.set()


async def main() -> None:
    global _stop_event

    settings = get_settings()
    configure_logging(os.environ.get("SYNC_WORKER_LOG_LEVEL", settings.LOG_LEVEL))

    adapters = build_marketplace_adapters(settings)
    collaborators = build_collaborators(settings)

    def worker_factory(name: str) -> SyncWorker:
        return SyncWorker(async_session, adapters, collaborators.inventory, collaborators.catalog,
                          settings=settings, name=name)

    pool = SyncWorkerPool(worker_factory, size=WORKER_COUNT)
    _stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal)

    logger.info("Starting sync worker process (workers=%s, poll=%ss, batch=%s)",
                WORKER_COUNT, settings.SYNC_POLL_INTERVAL, settings.SYNC_BATCH_SIZE)
    pool.start()
    await _stop_event.wait()

    logger.info("Performing graceful shutdown...")
    await pool.stop()
    logger.info("Sync worker shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
