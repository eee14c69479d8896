"""Health check endpoints for previewd.

Both endpoints are unauthenticated and mounted at root (no /api/v1 prefix).
Used by Kubernetes liveness and readiness probes.
"""

import importlib.metadata

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from previewd.database import AsyncSessionLocal

router = APIRouter(tags=["health"])


def _version() -> str:
    try:
        return importlib.metadata.version("previewd")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: returns 200 if the application process is running."""
    return {"status": "ok", "version": _version()}


@router.get("/health/ready")
async def health_ready() -> JSONResponse:
    """Readiness probe: returns 200 if the DB is reachable, 503 otherwise."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "detail": str(exc)},
        )
    return JSONResponse(status_code=200, content={"status": "ok"})
