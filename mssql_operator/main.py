"""
Operator process entry point.

A small FastAPI application serving health checks and metrics. Its lifespan
owns the Database controller: started directly, or handed to Redis leader
election when several replicas run.
"""
import asyncio
import socket
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from mssql_operator.api.v1 import health
from mssql_operator.config.logging import configure_logging, get_logger
from mssql_operator.config.redis import RedisConnection
from mssql_operator.config.settings import settings
from mssql_operator.core.reconciler import LifecycleReconciler
from mssql_operator.services.kubernetes_service import KubernetesService, create_client_set
from mssql_operator.workers.controller import DatabaseController
from mssql_operator.workers.leader_election import LeaderElection

configure_logging()
logger = get_logger(__name__)


def init_sentry() -> None:
    """Report unhandled errors to Sentry in production, when a DSN is configured."""
    if not (settings.sentry_dsn and settings.is_production):
        return
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        environment=settings.environment,
        release=f"mssql-operator@{settings.app_version}",
        server_name=socket.gethostname(),
    )


async def _start_leader_election(controller: DatabaseController) -> asyncio.Task:
    await RedisConnection.connect()
    instance_id = f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
    election = LeaderElection(instance_id=instance_id)
    logger.info("leader_election_started", instance_id=instance_id)
    return asyncio.create_task(
        election.run(controller.start, controller.stop),
        name="leader-election",
    )


async def _stop_leader_election(task: asyncio.Task) -> None:
    task.cancel()
    try:
        # Cancellation demotes the controller and releases the lease
        await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), timeout=30.0)
    except asyncio.TimeoutError:
        logger.warning("leader_election_shutdown_timeout")
    await RedisConnection.close()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Start the controller on startup, stop it and close clients on shutdown."""
    logger.info("operator_starting", environment=settings.environment)
    init_sentry()

    client_set = await create_client_set()
    service = KubernetesService(client_set)
    controller = DatabaseController(service, LifecycleReconciler(service))
    app.state.controller = controller
    election_task: Optional[asyncio.Task] = None

    try:
        if settings.leader_election_enabled:
            election_task = await _start_leader_election(controller)
        else:
            await controller.start()
    except Exception as e:
        logger.error("operator_startup_failed", error=str(e))
        await client_set.close()
        raise

    app.state.started = True
    logger.info(
        "operator_started",
        leader_election=settings.leader_election_enabled,
        watch_namespace=settings.watch_namespace or "*",
        workers=controller.workers,
    )

    yield

    logger.info("operator_shutting_down")
    app.state.started = False
    if election_task is not None:
        await _stop_leader_election(election_task)
    await controller.stop()
    await client_set.close()
    logger.info("operator_shutdown_complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Kubernetes operator reconciling SQL Server databases",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
    lifespan=lifespan,
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error"},
    )


if settings.prometheus_enabled:
    # Operator metrics share the default registry with the HTTP metrics
    Instrumentator(excluded_handlers=["/metrics", "/health.*"]).instrument(app).expose(app, endpoint="/metrics")

app.include_router(health.router, prefix="/health", tags=["Health"])


@app.get("/", include_in_schema=False)
async def root(request: Request):
    controller = getattr(request.app.state, "controller", None)
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "controller": "running" if controller is not None and controller.running else "idle",
    }


def run() -> None:
    """Console script entry point."""
    import uvicorn

    uvicorn.run(
        "mssql_operator.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=False,
    )


if __name__ == "__main__":
    run()
