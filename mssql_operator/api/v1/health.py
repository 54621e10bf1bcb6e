"""
Health check endpoints for monitoring and orchestration.
Provides liveness, readiness, and startup checks.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from mssql_operator.config.redis import RedisConnection
from mssql_operator.config.settings import settings

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    Returns current status and version.
    """
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": _now(),
    }


@router.get("/live")
async def liveness():
    """
    Kubernetes liveness check.
    Indicates whether the process should be restarted.
    """
    return {"status": "alive", "timestamp": _now()}


@router.get("/ready")
async def readiness(request: Request):
    """
    Kubernetes readiness check.

    Ready when the controller is running. With leader election enabled, a
    standby replica is ready as long as it can reach Redis to campaign.
    """
    controller = getattr(request.app.state, "controller", None)
    controller_running = bool(controller is not None and controller.running)

    if settings.leader_election_enabled:
        redis_healthy = await RedisConnection.ping()
        ready = controller_running or redis_healthy
        body = {
            "controller": "running" if controller_running else "standby",
            "redis": "healthy" if redis_healthy else "unhealthy",
        }
    else:
        ready = controller_running
        body = {"controller": "running" if controller_running else "stopped"}

    if not ready:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", **body, "timestamp": _now()},
        )

    return {"status": "ready", **body, "timestamp": _now()}


@router.get("/startup")
async def startup(request: Request):
    """
    Kubernetes startup check.
    Indicates whether the operator has finished starting.
    """
    started = bool(getattr(request.app.state, "started", False))
    if not started:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "starting", "timestamp": _now()},
        )
    return {"status": "started", "timestamp": _now()}
