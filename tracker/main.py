"""
Partner Tracker — postback relay and attribution pipeline.
Main application entry point.
"""

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI

from tracker.api.postback import router as postback_router
from tracker.middleware.rate_limit import get_limiter
from tracker.middleware.security import SecurityHeadersMiddleware
from tracker.config import configure_logging, get_settings

import structlog

configure_logging(get_settings().debug)

logger = structlog.get_logger()


async def _prune_rate_windows(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        removed = get_limiter().prune_idle()
        if removed:
            logger.debug("rate_windows_pruned", removed=removed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("tracker_starting", queue_dir=settings.queue_dir)
    pruner = asyncio.create_task(_prune_rate_windows(settings.rate_limit_prune_interval_seconds))
    yield
    pruner.cancel()
    with suppress(asyncio.CancelledError):
        await pruner
    logger.info("tracker_shutting_down")


app = FastAPI(
    title=get_settings().app_name,
    description="Postback relay — attribution, forwarding, stats, notifications, export.",
    version="2.0.0",
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)

# Security headers on every response
app.add_middleware(SecurityHeadersMiddleware)

# --- Routes ---
app.include_router(postback_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "partner-tracker", "version": "2.0.0"}
