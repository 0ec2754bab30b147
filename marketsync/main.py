# marketsync/main.py

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from marketsync.core.config import get_settings
from marketsync.core.logging_config import configure_logging
from marketsync.core.security import require_auth
from marketsync.database import async_session
from marketsync.integrations.setup import build_collaborators, build_marketplace_adapters
from marketsync.routes import connections, health, safety_margins, sync, webhooks
from marketsync.scheduler import start_scheduler, stop_scheduler
from marketsync.services.sync_worker import SyncWorker, SyncWorkerPool

logger = logging.getLogger(__name__)


def build_worker_pool(app: FastAPI, settings) -> SyncWorkerPool:
    def worker_factory(name: str) -> SyncWorker:
        return SyncWorker(
            async_session,
            app.state.adapters,
            app.state.collaborators.inventory,
            app.state.collaborators.catalog,
            settings=settings,
            name=name,
        )

    return SyncWorkerPool(worker_factory, size=settings.SYNC_WORKER_COUNT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    # Adapters are shared so every caller sees the same per-connection rate-limit state
    app.state.adapters = build_marketplace_adapters(settings)
    app.state.collaborators = build_collaborators(settings)
    if not app.state.adapters:
        logger.warning("No marketplace credentials configured; sync and order import are idle")

    if settings.SCHEDULER_ENABLED:
        await start_scheduler(app.state.adapters, app.state.collaborators.sales, settings)
    else:
        logger.info("Scheduler is disabled. Set SCHEDULER_ENABLED=true to enable")

    app.state.worker_pool = None
    if settings.SYNC_WORKERS_ENABLED:
        app.state.worker_pool = build_worker_pool(app, settings)
        app.state.worker_pool.start()

    try:
        yield
    finally:
        if app.state.worker_pool is not None:
            await app.state.worker_pool.stop()
        if settings.SCHEDULER_ENABLED:
            await stop_scheduler()


app = FastAPI(
    title="Marketplace Sync",
    lifespan=lifespan
)


# Add middleware to handle HTTPS behind proxy
@app.middleware("http")
async def proxy_headers_middleware(request: Request, call_next):
    forwarded_proto = request.headers.get("x-forwarded-proto")
    if forwarded_proto == "https":
        request.scope["scheme"] = "https"
    return await call_next(request)


# Include routers with authentication
app.include_router(connections.router)  # Per-route auth; the OAuth callback is public
app.include_router(connections.callback_router)
app.include_router(sync.router, dependencies=[require_auth()])
app.include_router(safety_margins.router, dependencies=[require_auth()])
app.include_router(webhooks.router)  # Webhooks need to be accessible without auth
app.include_router(health.router)  # Health check should be accessible without auth
