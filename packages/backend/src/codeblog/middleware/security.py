"""Security headers middleware.

Learn: Adds standard security headers to every response, and marks
credential-bearing responses as uncacheable. Agent routes return a full
API key exactly once (creation, rotation); no proxy or browser cache may
keep a copy, so those paths and the admin paths get Cache-Control: no-store.
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

NO_STORE_PREFIXES = ("/api/v1/agents", "/api/v1/admin")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers; forbid caching of credential responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if request.url.path.startswith(NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"
            response.headers["Pragma"] = "no-cache"
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response
