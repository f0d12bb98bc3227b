"""ASGI entry point: ``uvicorn planning_qa.main:app``."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from planning_qa.api.v1.router import api_router
from planning_qa.core.config import Settings, get_settings
from planning_qa.core.database import dispose_engine
from planning_qa.observability import (
    MetricsBackend,
    RequestLoggingMiddleware,
    get_metrics_backend,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    logger.info(
        "%s %s serving %s (generation=%s, embeddings=%s)",
        settings.app_name,
        settings.app_version,
        settings.api_prefix,
        settings.openai_model,
        settings.openai_embedding_model,
    )
    try:
        yield
    finally:
        # Release pooled connections
        await dispose_engine()


def create_app(
    settings: Settings | None = None,
    metrics_backend: MetricsBackend | None = None,
) -> FastAPI:
    """Build the service with its routes, middleware and operational endpoints."""
    settings = settings or get_settings()
    metrics_backend = metrics_backend or get_metrics_backend()
    prefix = settings.api_prefix

    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        openapi_url=f"{prefix}/openapi.json",
        docs_url=f"{prefix}/docs",
        redoc_url=None,
        lifespan=lifespan,
    )
    application.state.settings = settings
    application.state.metrics = metrics_backend

    application.add_middleware(RequestLoggingMiddleware, metrics=metrics_backend)
    application.include_router(api_router, prefix=prefix)

    @application.get("/health", tags=["ops"])
    async def health() -> dict[str, str]:
        return {
            "status": "healthy",
            "version": settings.app_version,
            "model": settings.openai_model,
        }

    @application.get("/metrics", include_in_schema=False)
    async def metrics() -> PlainTextResponse:
        return PlainTextResponse(
            metrics_backend.render_prometheus(),
            media_type="text/plain; version=0.0.4",
        )

    return application


app = create_app()
