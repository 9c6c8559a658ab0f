"""FastAPI application: service lifecycle, error mapping and routes."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gitwhisper import config
from gitwhisper.api.routes import router
from gitwhisper.errors import (
    AlreadySavedError,
    AuthError,
    GitWhisperError,
    NotFoundError,
    RateLimitError,
    TransientError,
    ValidationError,
)
from gitwhisper.services import Services

# Configure logging on import, before anything else logs
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)

_STATUS_CODES: list[tuple[type[GitWhisperError], int]] = [
    (ValidationError, 400),
    (AuthError, 401),
    (NotFoundError, 404),
    (AlreadySavedError, 409),
    (RateLimitError, 429),
    (TransientError, 503),
]


def status_for(exc: GitWhisperError) -> int:
    for cls, status in _STATUS_CODES:
        if isinstance(exc, cls):
            return status
    return 500


async def _domain_error(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, GitWhisperError)
    status = status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


def create_app(services: Services | None = None, start_workers: bool = True) -> FastAPI:
    """Build the application.

    ``services`` defaults to ``Services.from_config()``, built when the app
    starts. The background job workers run for the app's lifetime unless
    ``start_workers`` is false.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        svc = services or Services.from_config()
        app.state.services = svc
        if start_workers:
            svc.start_workers()
        try:
            yield
        finally:
            if start_workers:
                svc.stop_workers()

    app = FastAPI(
        title="GitWhisper",
        description="Repository question answering service",
        lifespan=lifespan,
    )
    # CORS for a local frontend dev server
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(GitWhisperError, _domain_error)
    app.include_router(router)
    return app


app = create_app()
