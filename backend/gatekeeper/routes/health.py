"""
Gatekeeper — Health Check Route
=================================

What:  Health endpoint for container probes and load balancers.
How:   Pings the counter store and the user store through the app's Gatekeeper.

Status levels:
    healthy:    both stores reachable (HTTP 200)
    degraded:   counter store down; rate limiting fails open (HTTP 200)
    unhealthy:  user store down; nobody can authenticate (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Request, Response

from gatekeeper import __version__
from gatekeeper.composer import get_gatekeeper
from gatekeeper.schemas.security import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(request: Request, response: Response) -> HealthResponse:
    gatekeeper = get_gatekeeper(request)
    overall = "healthy"

    counter_ok = await gatekeeper.counter_store.ping()
    if not counter_ok:
        overall = "degraded"
        logger.warning("Health check: counter store unreachable")

    user_ok = await gatekeeper.user_store.ping()
    if not user_ok:
        overall = "unhealthy"
        response.status_code = 503
        logger.warning("Health check: user store unreachable")

    return HealthResponse(
        status=overall,
        version=__version__,
        counter_store="connected" if counter_ok else "disconnected",
        user_store="connected" if user_ok else "disconnected",
        uptime_seconds=round(time.time() - _start_time, 2),
    )
