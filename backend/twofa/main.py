"""FastAPI application factory and main entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

import twofa.models  # noqa: F401  (registers tables on Base.metadata)
from twofa import __version__
from twofa.api.v1.router import api_router
from twofa.common.request_id import RequestIDMiddleware
from twofa.core.config import settings
from twofa.core.errors import (
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from twofa.core.logging import setup_logging
from twofa.core.redis_client import close_redis, init_redis
from twofa.core.security_headers import SecurityHeadersMiddleware
from twofa.db.base import Base
from twofa.db.engine import dispose_engine, get_engine
from twofa.middleware.request_timeout import RequestTimeoutMiddleware


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    await init_redis()
    # Create tables outside production (production schema is managed separately)
    if settings.ENV == "dev":
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    yield
    # Shutdown
    await close_redis()
    await dispose_engine()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=__version__,
        description="Ride-hailing two-factor authentication API",
        openapi_url="/openapi.json" if settings.ENV != "prod" else None,
        docs_url="/docs" if settings.ENV != "prod" else None,
        redoc_url="/redoc" if settings.ENV != "prod" else None,
        lifespan=lifespan,
    )

    # Add middleware (order matters - last added is outermost)
    app.add_middleware(RequestTimeoutMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add exception handlers
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include API routers
    app.include_router(api_router, prefix=settings.API_PREFIX)

    @app.get("/health", tags=["Root"])
    async def health():
        return {"status": "ok", "version": __version__}

    return app
