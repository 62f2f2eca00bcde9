"""
API key authentication middleware.
Supports both X-API-Key header and Authorization: Bearer token.

Auth is enforced only when CI_API_KEY is configured.

PUBLIC ROUTES (no auth required):
- /health - Health check
- /docs, /redoc, /openapi.json - API documentation
"""
import hmac
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ciserver.core.config import get_settings

logger = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset([
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
])


def is_public_path(path: str) -> bool:
    """Check if a path is public (no auth required)."""
    return path in PUBLIC_PATHS


def extract_api_key(request: Request) -> str | None:
    """API key from X-API-Key, falling back to Authorization: Bearer."""
    api_key = request.headers.get("X-API-Key")
    if api_key:
        return api_key
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce the API key on every non-public endpoint."""

    async def dispatch(self, request: Request, call_next):
        settings = get_settings()
        path = request.url.path

        if not settings.auth_enabled or is_public_path(path):
            return await call_next(request)

        api_key = extract_api_key(request)
        if not api_key:
            return JSONResponse(status_code=401, content={"detail": "Missing API key"})

        if not hmac.compare_digest(api_key.encode(), settings.api_key.encode()):
            # Don't include the key!
            logger.warning(f"auth_failed path={path}")
            return JSONResponse(status_code=401, content={"detail": "Invalid API key"})

        return await call_next(request)
