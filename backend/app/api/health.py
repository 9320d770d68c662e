"""Health check endpoints. No authentication required."""

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from app.core import check_db_connection, settings

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        status.HTTP_200_OK: {"description": "Service is healthy"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Service is unhealthy"},
    },
)
async def health_check(response: Response) -> HealthResponse:
    """
    Health check endpoint.

    Returns 503 if the database backend is configured but unreachable.
    """
    if settings.storage_backend == "memory":
        return HealthResponse(status="healthy", version=settings.app_version, database="not used")

    db_healthy = await check_db_connection()
    if not db_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if db_healthy else "unhealthy",
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
    )
