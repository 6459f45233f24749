"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from fastapi import FastAPI, Request, Response

from clientportal.config import load_config
from clientportal.container import PortalContainer, build_container
from clientportal.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from clientportal.observability.logging import get_logger

from .routes import health, webhooks_telegram

logger = get_logger(__name__)


def create_app(
    container: PortalContainer | None = None,
    container_factory: Callable[[], PortalContainer] | None = None,
) -> FastAPI:
    """Create the FastAPI app.

    Args:
        container: Pre-built components (tests). When None the container is
            built from the environment at startup.
        container_factory: Override for building the container lazily.

    The poll scheduler starts with the app (unless POLLER_ENABLED is false)
    and stops on shutdown.
    """

    def _build() -> PortalContainer:
        if container is not None:
            return container
        if container_factory is not None:
            return container_factory()
        return build_container(load_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        built = _build()
        app.state.container = built
        if built.config.poller_enabled:
            built.scheduler.start()
        else:
            logger.info("poll scheduler disabled")
        try:
            yield
        finally:
            built.scheduler.stop()

    app = FastAPI(
        title="Client Portal",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.include_router(health.router)
    app.include_router(webhooks_telegram.router)

    return app
