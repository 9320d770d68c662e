"""Silence Notes Backend - FastAPI Application Factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import api_router
from app.api.auth import router as auth_router
from app.api.health import router as health_router
from app.core import settings
from app.core.lifecycle import shutdown, startup
from app.core.logging import get_logger
from app.middleware import BearerAuthMiddleware
from app.services.identity import IdentityService

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    tasks = await startup(app, logger)

    yield

    logger.info("Shutting down...")
    await shutdown(app, logger, tasks)


def create_app(identity: IdentityService | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        identity: Prebuilt identity service. When omitted it is built from
            settings during startup.
    """
    app = FastAPI(
        title=settings.app_name,
        description="Identity and session API for Silence Notes",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.identity = identity

    # All /api/* requests require a valid access token
    app.add_middleware(BearerAuthMiddleware)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    # so that CORS headers are present on 401 responses too.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept"],
    )

    app.include_router(health_router)  # Health at root level
    app.include_router(auth_router)  # Auth at root level (/auth)
    app.include_router(api_router)  # API at /api

    return app


# Application instance
app = create_app()
