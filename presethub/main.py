"""PresetHub content cache: FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from presethub.config import settings
from presethub.services.content_service import ContentService

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting PresetHub content cache...")
    service = ContentService(settings)
    app.state.settings = settings
    app.state.content_service = service

    service.mirror.log_status()
    if settings.warmup_on_startup:
        service.ensure_warmup()

    logger.info("PresetHub ready (repo=%s/%s)", settings.github_repo_owner, settings.github_repo_name)
    yield

    await service.close()
    logger.info("PresetHub stopped")


app = FastAPI(
    title="PresetHub",
    description="Cached access to community presets, cards and world books",
    version="0.1.0",
    lifespan=lifespan,
)

from presethub.api.cache import router as cache_router
from presethub.api.webhooks import router as webhooks_router

app.include_router(cache_router)
app.include_router(webhooks_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "presethub", "version": "0.1.0"}
