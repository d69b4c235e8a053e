"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from facecrop.detection import FaceDetector

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from facecrop.api.routes import router
from facecrop.batch.pool import ProcessingPool
from facecrop.config import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    detector: FaceDetector | None = getattr(app.state, "detector", None)
    logger.info(
        "Starting FaceCrop (max_concurrent=%s, detector=%s)",
        settings.max_concurrent,
        type(detector).__name__ if detector is not None else "none",
    )

    processing_pool = ProcessingPool(settings, detector=detector)
    app.state.processing_pool = processing_pool

    logger.info("FaceCrop ready")
    yield

    logger.info("Shutting down FaceCrop")
    processing_pool.shutdown()
    logger.info("FaceCrop shutdown complete")


def create_app(detector: FaceDetector | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``detector`` is optional; without one, crop requests must carry faces.
    """
    application = FastAPI(
        title="FaceCrop",
        description="Face crop geometry and enhancement API",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.state.detector = detector

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
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("facecrop.main:app", host=settings.host, port=settings.port)
