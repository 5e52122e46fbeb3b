"""Realty CRM billing backend: FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from realtycrm.api.v1.subscription_ops import router as subscription_ops_router
from realtycrm.config import settings
from realtycrm.scheduler.subscription_scheduler import subscription_scheduler

# Configure root logger so all realtycrm.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler: runs the subscription scheduler alongside the API."""
    # Startup
    if settings.scheduler_enabled:
        subscription_scheduler.start()
    else:
        logger.info("Subscription scheduler disabled by configuration")
    yield
    # Shutdown: stop triggers, then dispose engine connections
    await subscription_scheduler.stop()
    from realtycrm.database import engine

    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Subscription billing scheduler for the realty CRM.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(subscription_ops_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": settings.app_name,
        "billing_pass": "running" if subscription_scheduler.is_running else "idle",
    }


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
