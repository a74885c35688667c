"""FastAPI application factory.

Middleware ordering (outermost first):
1. CORS -- answers preflight before anything else
2. Idempotency gateway -- dedups POST/PUT/DELETE
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from owlverload import __version__
from owlverload.idempotency.config import GatewaySettings
from owlverload.idempotency.middleware import install_idempotency_middleware
from owlverload.idempotency.store import IdemStore, close_redis

logger = logging.getLogger(__name__)

HEALTH_PATHS = ("/public/health", "/public/api/v1/health")


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    await close_redis()


def create_app(
    store: IdemStore | None = None,
    settings: GatewaySettings | None = None,
) -> FastAPI:
    """Build the API app with the gateway installed.

    Business routers are mounted by the caller on the returned app; every
    mutating route is covered by the gateway automatically.
    """
    app = FastAPI(title="Owlverload API", version=__version__, lifespan=_lifespan)

    async def health() -> PlainTextResponse:
        return PlainTextResponse("OK")

    for path in HEALTH_PATHS:
        app.add_api_route(path, health, methods=["GET"], include_in_schema=False)

    # Innermost first: last added = outermost.
    install_idempotency_middleware(app, store=store, settings=settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "Idempotency-Ref"],
    )

    logger.info("Owlverload API app created (version %s)", __version__)
    return app
