"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from classifyx.api.routes import router
from classifyx.config import get_settings
from classifyx.errors import ModelLoadError
from classifyx.ml.inference import InferencePool
from classifyx.ml.model_registry import ModelRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load models on startup, release them on shutdown.

    A model that fails to load aborts startup; the service never runs with a
    partial model set.
    """
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting ClassifyX (device=%s, max_concurrent=%s, default_model=%s)",
        settings.device,
        settings.max_concurrent,
        settings.default_model,
    )

    registry = ModelRegistry(settings)
    try:
        registry.initialize()
    except ModelLoadError:
        logger.critical("Model loading failed, refusing to start", exc_info=True)
        raise
    app.state.model_registry = registry

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool

    logger.info("ClassifyX ready with %s", ", ".join(registry.loaded_models()))
    yield

    logger.info("Shutting down ClassifyX")
    inference_pool.shutdown()
    registry.shutdown()
    logger.info("ClassifyX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ClassifyX",
        description="Image classification API comparing pretrained ImageNet models",
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


def run() -> None:
    """Serve the app with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("classifyx.main:app", host=settings.host, port=settings.port)
