"""Request correlation for sign-in flows.

Learn: a single login spans several log events ("verification_code.consumed",
"identity.user_created", "session.issued"), possibly across a retrying
client. Each request carries one ID, taken from the app's X-Request-ID
when it is sane (at most 128 chars) or generated here. The ID, method and
path are bound to structlog's contextvars so every event of the request
can be grepped together, and the ID is echoed back for support tickets.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

MAX_REQUEST_ID_LENGTH = 128


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Generate and propagate a unique request ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        # Use the caller's ID if it is sane, otherwise generate one
        request_id = request.headers.get("X-Request-ID", "")
        if not request_id or len(request_id) > MAX_REQUEST_ID_LENGTH:
            request_id = str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
