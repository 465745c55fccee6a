"""Main entry point for the Feed Relay application."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from feed_relay.api.v1 import (
    automations_router,
    queue_router,
    session_router,
    system_router,
)
from feed_relay.core.settings import settings
from feed_relay.services.runtime import Runtime

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Feed Relay API",
    description="Feed to messaging dispatch service",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(automations_router, prefix="/api/v1")
app.include_router(queue_router, prefix="/api/v1")
app.include_router(session_router, prefix="/api/v1")
app.include_router(system_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    if settings.schedulers_enabled:
        runtime = Runtime()
        await runtime.start()
        app.state.runtime = runtime
    else:
        logger.info("Background jobs disabled; serving the API only")
        app.state.runtime = None


@app.on_event("shutdown")
async def on_shutdown() -> None:
    runtime: Runtime | None = getattr(app.state, "runtime", None)
    if runtime:
        await runtime.stop()
    app.state.runtime = None


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Feed to messaging dispatch service",
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("feed_relay.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
