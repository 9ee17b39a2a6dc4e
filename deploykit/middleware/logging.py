"""
DeployKit — Access Log Middleware
==================================

What:  One access line per request to the runtime shell, tagged with the
       datastore container the process is bound to:

           GET /orders 200 12.4ms rid=1f3a9c0e db=orders-db

How:   The datastore comes from `app.state.datastore`, set by the lifespan
       once the parameter set is loaded ("-" before that). Level follows
       the status code: 5xx ERROR, 4xx WARNING, everything else INFO.
       Paths in QUIET_PATHS are polled by container health checks and
       are not logged.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from deploykit.middleware.request_id import request_id_var

logger = logging.getLogger("deploykit.access")

QUIET_PATHS = frozenset({"/health"})


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in QUIET_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        logger.log(
            _level_for(response.status_code),
            "%s %s %d %.1fms rid=%s db=%s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request_id_var.get() or "-",
            getattr(request.app.state, "datastore", None) or "-",
        )
        return response
