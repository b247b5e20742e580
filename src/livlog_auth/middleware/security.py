"""Response hardening for the identity API.

Learn: the only consumer is the Livlog iOS app, and almost every body
this service returns carries credentials (access tokens, rotated refresh
tokens, the profile). So the headers are about keeping those bodies out
of places they could leak from:
- Cache-Control: no-store, unless a route chose its own caching
- Referrer-Policy: no-referrer, URLs never leave with a Referer
- X-Content-Type-Options / X-Frame-Options: the JSON is never sniffed
  as HTML or framed
- Strict-Transport-Security on https, so refresh tokens never go out
  over plain http after the first visit
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers.setdefault("Cache-Control", "no-store")
        # Only add HSTS on HTTPS connections
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response
