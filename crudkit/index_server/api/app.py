"""
FastAPI application factory for the crudkit index server.

The app is a thin query surface over an EngineContext:
- Index routes under /api/v1
- /health at the root
- Error mapping from index server errors to HTTP status codes
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .._version import __version__
from ..engine.context import EngineContext
from ..errors import DuplicateIndexError, IndexNotFoundError, IndexServerError, InvalidStateError
from ..index.declarative import IndexSpecError
from .routes import router

_STATUS_BY_ERROR = (
    (IndexNotFoundError, 404),
    (DuplicateIndexError, 409),
    (InvalidStateError, 409),
)


def create_app(context: EngineContext, manage_context: bool = False) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        context: Engine context serving the routes
        manage_context: Initialize and shut down the context with the app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if manage_context:
            await context.init()
        yield
        if manage_context:
            await context.shutdown()

    app = FastAPI(
        title="crudkit index server",
        description="Incrementally maintained materialized indexes over a change feed.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context

    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        ready = context.initialized
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "status": "healthy" if ready else "starting",
                "service": "crudkit-index",
                "indexes": len(context.registry) if ready else 0,
            },
        )

    @app.exception_handler(IndexServerError)
    async def index_server_error(request: Request, exc: IndexServerError):
        status_code = next(
            (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
            400,
        )
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.code, "message": exc.message, "details": exc.details},
        )

    @app.exception_handler(IndexSpecError)
    async def index_spec_error(request: Request, exc: IndexSpecError):
        return JSONResponse(
            status_code=422,
            content={"error": "INVALID_INDEX_SPEC", "message": str(exc), "details": {}},
        )

    return app
