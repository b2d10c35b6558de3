"""
Panel Service Entrypoint

FastAPI application for the streaming panel. Includes all API routers, the
change feed wiring (sync worker + notification engine) and the expiry sweeper.
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from panel import config
from panel.api import backend_sync, changes, notifications, settings, stats, sync, table_sync, updates, users
from panel.api.deps import PanelContext, set_context
from panel.change_feed import ChangeFeed
from panel.database import SessionLocal, init_db
from panel.errors import PanelError
from panel.services.aggregator import FallbackAggregator
from panel.services.live_client import LiveBackendClient
from panel.services.notifications import ExpirySweeper, NotificationEngine, NotificationStore, log_sink
from panel.services.sync_dispatcher import SyncDispatcher, SyncTable
from panel.services.sync_worker import SyncWorker
from panel.services.update_manager import UpdateManager
from panel.settings import live_backend_url_resolver
from shared.logging_config import setup_logging

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
}

# Tables whose committed writes go through the change feed
TRACKED_TABLES = [t.value for t in SyncTable] + ["servers"]

app = FastAPI(title="StreamPanel Service")


@app.middleware("http")
async def cors_headers(request: Request, call_next):
    # Any OPTIONS request is answered before routing or body parsing
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=CORS_HEADERS)
    response = await call_next(request)
    for name, value in CORS_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


@app.exception_handler(PanelError)
async def panel_error_handler(request: Request, exc: PanelError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse({"error": message}, status_code=400)


# Include all API routers
app.include_router(backend_sync.router)
app.include_router(table_sync.router)
app.include_router(updates.router)
app.include_router(stats.router)
app.include_router(users.router)
app.include_router(notifications.router)
app.include_router(sync.router)
app.include_router(settings.router)
app.include_router(changes.router)


def create_context(session_factory, threaded: bool = True, client: Optional[LiveBackendClient] = None) -> PanelContext:
    """
    Build the panel services around one session factory.

    With threaded=False the change feed delivers inline, which tests use to
    observe effects synchronously.
    """
    client = client or LiveBackendClient(timeout_seconds=config.LIVE_TIMEOUT_SECONDS)
    dispatcher = SyncDispatcher(client)
    engine = NotificationEngine(
        sinks=[log_sink, NotificationStore(session_factory)],
        dedup_capacity=config.DEDUP_CAPACITY,
        expiry_window=timedelta(hours=config.EXPIRY_WINDOW_HOURS),
    )
    sync_worker = SyncWorker(
        dispatcher,
        live_backend_url_resolver(session_factory),
        max_workers=config.SYNC_WORKERS,
    )
    feed = ChangeFeed(TRACKED_TABLES, threaded=threaded)
    feed.subscribe("sync", sync_worker.submit)
    feed.subscribe("notifications", engine.handle)

    return PanelContext(
        dispatcher=dispatcher,
        aggregator=FallbackAggregator(client),
        notifications=engine,
        updates=UpdateManager(config.AGENT_SECRET),
        feed=feed,
        sync_worker=sync_worker,
        sweeper=ExpirySweeper(engine, session_factory, interval_seconds=config.SWEEP_INTERVAL_SECONDS),
        sweep_min_interval_seconds=config.SWEEP_MIN_INTERVAL_SECONDS,
    )


def start_context(context: PanelContext, session_target):
    context.feed.attach(session_target)
    context.feed.start()
    if context.sweeper:
        context.sweeper.start()
    set_context(context)


def stop_context(context: PanelContext, session_target):
    set_context(None)
    if context.sweeper:
        context.sweeper.stop()
    context.feed.detach(session_target)
    context.feed.stop()
    if context.sync_worker:
        context.sync_worker.stop()
    context.aggregator.client.close()


# Global panel context instance
panel_context = None


@app.on_event("startup")
def startup_init():
    """Initialize database and start the change feed and sweeper"""
    global panel_context

    setup_logging("panel", level=config.LOG_LEVEL, log_file=config.LOG_FILE)

    # Initialize database
    init_db()

    logger.info("Starting change feed, sync worker and expiry sweeper...")
    panel_context = create_context(SessionLocal)
    start_context(panel_context, SessionLocal)

    logger.info(f"Panel service startup complete (live backend sync via {config.SYNC_WORKERS} workers)")


@app.on_event("shutdown")
def shutdown_cleanup():
    """Stop background services on shutdown"""
    global panel_context

    if panel_context:
        logger.info("Stopping panel services...")
        stop_context(panel_context, SessionLocal)
        panel_context = None

    logger.info("Panel service shutdown complete")


@app.get("/")
def root():
    return {
        "service": "panel",
        "message": "StreamPanel sync and notification service running",
    }
