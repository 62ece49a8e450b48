"""FastAPI application entry point for the tradie escrow service.

Lifecycle:
    1. Startup: Initialize logging, build the service container (database or
       in-memory stores, Redis or in-memory outbox, payment gateway) and start
       the notification dispatcher.
    2. Running: Serve the REST API and the gateway webhook.
    3. Shutdown: Stop the dispatcher, close database and Redis connections.

Run with:
    uv run uvicorn tradie_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from tradie_escrow.config import Settings, get_settings
from tradie_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings: Settings = app.state.settings

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        store_backend=settings.store_backend,
        gateway_mode=settings.gateway_mode,
    )

    # 2. Wire stores, gateway and outbox
    from tradie_escrow.bootstrap import build_container

    container = await build_container(settings, gateway=getattr(app.state, "gateway", None))
    app.state.container = container

    # 3. Background notification delivery
    dispatcher = container.dispatcher()
    dispatcher_task = asyncio.create_task(dispatcher.run())

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    dispatcher.stop()
    await dispatcher_task
    await container.close()
    logger.info("app.stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory: creates and configures the FastAPI app."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Tradie Escrow",
        description=(
            "Escrow payment lifecycle for a trades marketplace: "
            "quote, accept and pay, work, completion, release."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )
    app.state.settings = settings

    # --- Middleware ---
    from tradie_escrow.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from tradie_escrow.api.routes.health import router as health_router
    from tradie_escrow.api.routes.jobs import router as jobs_router
    from tradie_escrow.api.routes.proposals import router as proposals_router
    from tradie_escrow.api.routes.providers import router as providers_router
    from tradie_escrow.api.routes.webhooks import router as webhooks_router

    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(proposals_router)
    app.include_router(providers_router)
    app.include_router(webhooks_router)

    return app


# The app instance used by Uvicorn
app = create_app()
