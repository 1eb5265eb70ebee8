"""Health check endpoints for monitoring and readiness probes."""

import logging
import time

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from iqstats.datasource.base import DataSourceError
from iqstats.services.fetch import RESULTS_TABLE

log = logging.getLogger(__name__)

router = APIRouter()

# Store process start time
START_TIME = time.time()


@router.get("/health")
async def health_check() -> JSONResponse:
    """
    Basic health check endpoint.

    Returns:
        JSON with status and uptime information
    """
    uptime = int(time.time() - START_TIME)
    return JSONResponse({
        "status": "healthy",
        "uptime_seconds": uptime,
        "service": "iqstats"
    })


@router.get("/readiness")
async def readiness_check(request: Request) -> Response:
    """
    Kubernetes-style readiness probe.

    Returns:
        200 if the data source answers a count query
        503 otherwise
    """
    datasource = request.app.state.analytics.cache.datasource
    try:
        await datasource.count(RESULTS_TABLE)
    except DataSourceError as e:
        log.warning(f"Readiness check failed: {e}")
        return Response(status_code=503, content=f"Not ready: {e}")
    return Response(status_code=200, content="Ready")


@router.get("/liveness")
async def liveness_check() -> Response:
    """
    Kubernetes-style liveness probe.

    Returns:
        200 if service is alive
    """
    return Response(status_code=200, content="Alive")
