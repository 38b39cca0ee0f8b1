"""
Health Check Endpoint
Provides health status for container health checks and monitoring
"""
from typing import Any, Dict

from fastapi import APIRouter, Request, status

from carecall.utils.clock import isoformat, utcnow

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(request: Request) -> Dict[str, Any]:
    """
    Health check endpoint.

    Returns:
        Dict with status, timestamp and the number of live calls
    """
    health: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": isoformat(utcnow()),
        "service": "carecall",
    }

    container = getattr(request.app.state, "container", None)
    if container is not None:
        health["active_calls"] = container.registry.active_count()
        health["carrier"] = container.carrier.name if container.carrier else None

    return health
