"""
DeployKit — Request ID Middleware
==================================

What:  Tags every request to the runtime shell with a correlation ID,
       echoed back in the `X-Request-ID` header.
How:   An ID supplied by the caller (a load balancer or the container
       health checker) is kept when it is short and made of safe
       characters; anything else is replaced by a fresh 8-hex-digit ID so
       log lines cannot be forged through the header. The ID is stored in
       a ContextVar for loggers and exception handlers.
"""

import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

HEADER = "X-Request-ID"

_VALID_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


def accept_request_id(supplied: str) -> str:
    """Return `supplied` if it is a usable correlation ID, else a new one."""
    if supplied and _VALID_ID.match(supplied):
        return supplied
    return new_request_id()


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = accept_request_id(request.headers.get(HEADER, ""))
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers[HEADER] = rid
        return response
