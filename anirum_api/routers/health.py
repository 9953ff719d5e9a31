"""Health check endpoints for container orchestration."""

from typing import Any

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse

from anirum_api.database import check_database_connection

router = APIRouter(tags=["Health"])


def _messenger_status(request: Request) -> dict[str, bool]:
    services = getattr(request.app.state, "services", None)
    if services is None:
        return {"whatsapp": False, "telegram": False}
    return {
        "whatsapp": services.whatsapp.is_configured,
        "telegram": services.telegram.is_configured,
    }


@router.get("/health", response_model=None)
async def health_check(request: Request) -> Response:
    """
    Health check endpoint with database and messenger status.

    Messenger credentials are reported but never degrade the status:
    a missing gateway only disables its verification channel.
    """
    db_connected = await check_database_connection()
    content = {
        "status": "healthy" if db_connected else "degraded",
        "database": "connected" if db_connected else "disconnected",
        "messengers": _messenger_status(request),
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK if db_connected else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=content,
    )


@router.get("/health/live")
async def liveness_probe() -> dict[str, Any]:
    """Liveness probe; does not touch external dependencies."""
    return {"status": "alive"}


@router.get("/health/ready", response_model=None)
async def readiness_probe() -> Response:
    """Readiness probe; requires the database."""
    if await check_database_connection():
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": "connected"},
        )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "not_ready", "database": "disconnected"},
    )
