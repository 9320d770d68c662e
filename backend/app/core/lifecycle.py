"""Startup and shutdown sequence for the application."""

import asyncio
import logging

from fastapi import FastAPI

from app.core.config import settings
from app.core.database import dispose_engine
from app.core.logging import get_logger, setup_logging

_logger = get_logger("lifespan")


def task_done_callback(task: asyncio.Task[None]) -> None:
    """Log unhandled exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _logger.error(f"Background task {task.get_name()} failed: {exc}")


async def startup(app: FastAPI, logger: logging.Logger) -> list[asyncio.Task]:
    """Configure logging, build the identity service and start the sweeper.

    Returns the background tasks that ``shutdown`` must cancel.
    """
    from app.services.identity import build_identity_service
    from app.services.revocation import RevocationSweeper

    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )

    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    if getattr(app.state, "identity", None) is None:
        app.state.identity = build_identity_service(settings)
    identity = app.state.identity

    sweeper = RevocationSweeper(
        {
            "revoked_tokens": identity.revocations.sweep,
            "oauth_states": identity.oauth.state_store.purge_expired,
            "sessions": identity.sessions.purge_inactive,
        },
        interval_seconds=settings.revocation_sweep_interval_seconds,
        timeout_seconds=settings.revocation_sweep_timeout_seconds,
    )
    app.state.sweeper = sweeper

    sweep_task = sweeper.start()
    sweep_task.add_done_callback(task_done_callback)
    return [sweep_task]


async def shutdown(app: FastAPI, logger: logging.Logger, tasks: list[asyncio.Task]) -> None:
    """Cancel background tasks and release database connections."""
    for task in tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    if settings.storage_backend == "postgres":
        await dispose_engine()
    logger.info("Shutdown complete")
