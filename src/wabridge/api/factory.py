"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response

from wabridge.bridge import Bridge, build_bridge
from wabridge.config import load_settings
from wabridge.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from wabridge.observability.logging import get_logger

from .routers import public
from .routes import files, helpdesk_outbound, incoming_chat

logger = get_logger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    if getattr(app.state, "bridge", None) is None:
        app.state.bridge = build_bridge(load_settings())
    bridge: Bridge = app.state.bridge
    bridge.sweeper.start()
    logger.info("media sweeper started")
    try:
        yield
    finally:
        bridge.sweeper.stop()
        logger.info("media sweeper stopped")


def create_app(bridge: Bridge | None = None) -> FastAPI:
    """Create the FastAPI app.

    Args:
        bridge: Pre-built components. If None, they are built from the
                environment when the app starts.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="wabridge",
        docs_url=None,
        redoc_url=None,
        lifespan=_lifespan,
    )
    app.state.bridge = bridge

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

    app.include_router(public.router)
    app.include_router(incoming_chat.router)
    app.include_router(helpdesk_outbound.router)
    app.include_router(files.router)

    return app
