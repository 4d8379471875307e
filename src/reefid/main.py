"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reefid.api.routes import router
from reefid.config import get_settings
from reefid.ml.image_classifier import SeaAnimalClassifier
from reefid.ml.inference import InferencePool
from reefid.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


async def _evict_idle_models(manager: OnnxModelManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        manager.unload_idle_models()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting ReefID (device=%s, max_concurrent=%s, model=%s, labels=%s, cache=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_path,
        settings.labels_path,
        settings.cache_models,
    )

    model_manager = OnnxModelManager(settings)
    model_manager.ensure_assets()
    app.state.model_manager = model_manager
    app.state.classifier = SeaAnimalClassifier(settings, model_manager)

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool

    eviction: asyncio.Task[None] | None = None
    if settings.cache_models and settings.model_ttl > 0:
        eviction = asyncio.create_task(_evict_idle_models(model_manager, max(settings.model_ttl / 2, 1.0)))

    logger.info("ReefID ready")
    yield

    logger.info("Shutting down ReefID")
    if eviction is not None:
        eviction.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await eviction
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("ReefID shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ReefID",
        description="Sea animal image classifier",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()
