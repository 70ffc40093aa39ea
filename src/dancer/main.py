"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dancer.api.routes import router
from dancer.config import Settings, get_settings
from dancer.ml.classifier import ClassificationService
from dancer.ml.engine import InferenceEngine
from dancer.ml.errors import ModelLoadError
from dancer.ml.inference import InferencePool
from dancer.ml.model_manager import OnnxModelManager
from dancer.store.configuration import ConfigurationRepository
from dancer.store.history import AnalysisHistory

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings) -> None:
    """Build the pipeline objects and attach them to ``app.state``."""
    model_manager = OnnxModelManager(settings)
    configuration = ConfigurationRepository(
        path=settings.config_file,
        initial=settings.pipeline_defaults(),
    )

    app.state.settings = settings
    app.state.model_manager = model_manager
    app.state.configuration = configuration
    app.state.classification_service = ClassificationService(
        engine_factory=partial(InferenceEngine, model_manager, settings.model_name),
        configuration=configuration,
    )
    app.state.inference_pool = InferencePool(settings)
    app.state.history = AnalysisHistory()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting Dancer (device=%s, model=%s, max_concurrent=%s)",
        settings.device,
        settings.model_name,
        settings.max_concurrent,
    )

    init_app_state(app, settings)
    service: ClassificationService = app.state.classification_service
    pool: InferencePool = app.state.inference_pool

    try:
        await pool.run_io(service.start)
    except ModelLoadError:
        # Stay up so the model can be provided and started via the API.
        logger.exception("Model could not be loaded at startup")

    logger.info("Dancer ready (active=%s)", service.is_active())
    yield

    logger.info("Shutting down Dancer")
    await pool.run_io(service.stop)
    pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("Dancer shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Dancer",
        description="Dance move classification from camera frames",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the API with uvicorn using the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("dancer.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
