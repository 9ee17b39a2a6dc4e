"""
DeployKit — Health Check Route
===============================

What:  Health endpoint of the application runtime shell.
How:   Runs `SELECT 1` against the configured datastore and reports the
       result, plus which datastore container is in use and process uptime.

Status levels:
    - healthy:   datastore reachable (HTTP 200)
    - unhealthy: datastore unreachable or engine not initialized (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Request, Response

from deploykit import __version__
from deploykit.database import get_engine, ping
from deploykit.schemas.health import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    responses={503: {"model": HealthResponse, "description": "Datastore unreachable"}},
)
async def health_check(request: Request, response: Response) -> HealthResponse:
    db_status = "connected"
    overall = "healthy"

    try:
        await ping(get_engine())
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        response.status_code = 503
        logger.warning("Health check: datastore unreachable: %s", str(e))

    return HealthResponse(
        status=overall,
        version=__version__,
        datastore=getattr(request.app.state, "datastore", "unknown"),
        database=db_status,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
