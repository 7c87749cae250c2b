"""FastAPI application hosting the pairing broker."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

from .core.config import settings
from .routers import broker as broker_router
from .services.broker import RoomRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Own the room registry for the lifetime of the process."""

    registry = RoomRegistry(ttl_seconds=settings.room_ttl_seconds)
    app.state.registry = registry
    logger.info("Pairing broker ready (room TTL %.0fs)", registry.ttl)
    try:
        yield
    finally:
        await registry.shutdown()


def create_app() -> FastAPI:
    app = FastAPI(title="Pinq Signaling", version="0.1.0", lifespan=lifespan)

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=settings.cors_allow_origins != ["*"],
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    @app.get("/health", tags=["meta"])
    @app.get("/api/health", tags=["meta"], include_in_schema=False)
    async def health() -> dict[str, str]:
        """Liveness probe used to pre-warm a cold broker."""

        return {"status": "ok"}

    @app.head("/health", tags=["meta"])
    @app.head("/api/health", tags=["meta"], include_in_schema=False)
    async def health_head() -> Response:
        """Allow HEAD for uptime monitors that only need the status code."""

        return Response(status_code=200)

    @app.head("/", tags=["meta"])
    async def index_head() -> Response:
        """Fast health checks issue HEAD /; answer with 200 to avoid noisy 405s."""

        return Response(status_code=200)

    @app.get("/robots.txt", response_class=PlainTextResponse, include_in_schema=False)
    async def robots() -> PlainTextResponse:
        return PlainTextResponse("User-agent: *\nDisallow: /")

    app.include_router(broker_router.router)
    return app


app = create_app()
