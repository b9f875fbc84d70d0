"""Keygate FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from keygate import __version__
from keygate.config import get_settings
from keygate.db import close_db, get_async_session, get_session_factory, init_db
from keygate.errors import KeygateError
from keygate.services.api_key import ApiKeyService, ApiKeyVerifier

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("keygate.startup", version=__version__)
    await init_db()

    app.state.verifier = ApiKeyVerifier(session_factory=get_session_factory())

    async with get_async_session() as session:
        await ApiKeyService(db_session=session).auto_provision()

    yield

    # Shutdown
    logger.info("keygate.shutdown")

    # Let deferred expired-key deletions finish before the engine goes away
    await app.state.verifier.drain()

    await close_db()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Keygate",
        description="API key authentication, quota and scope enforcement",
        version=__version__,
        lifespan=lifespan,
    )

    # Request ID middleware
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add request ID to all requests."""
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    # Error handler
    @app.exception_handler(KeygateError)
    async def keygate_error_handler(request: Request, exc: KeygateError):
        """Handle Keygate errors with consistent format."""
        request_id = getattr(request.state, "request_id", None)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_id),
            headers=exc.headers(),
        )

    # Health check
    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "version": __version__}

    # Import and register API routers
    from keygate.api.v1 import router as v1_router

    app.include_router(v1_router, prefix="/v1")

    return app


# Create default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "keygate.main:app",
        host=settings.server.host,
        port=settings.server.port,
    )
