"""
Rate Limiting - fixed request budget per client per minute.

Uses SlowAPI with in-process storage. Applied at ingress through
SlowAPIMiddleware before any authentication or database work.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from structlog import get_logger

from pageassist.config import settings
from pageassist.services.credentials import API_KEY_LOOKUP_LENGTH, is_api_key

logger = get_logger(__name__)

DEFAULT_LIMIT = f"{settings.rate_limit_per_minute}/minute"


def get_client_key(request: Request) -> str:
    """
    Rate limit key - the API key's non-secret prefix when present, else the IP.
    """
    api_key = request.headers.get("x-api-key", "")
    if is_api_key(api_key):
        return f"key:{api_key[:API_KEY_LOOKUP_LENGTH]}"
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_client_key,
    default_limits=[DEFAULT_LIMIT],
    storage_uri="memory://",
    enabled=settings.rate_limit_enabled,
    headers_enabled=True,
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render a rate limit hit as a structured error body."""
    logger.warning(
        "rate_limit_exceeded",
        path=request.url.path,
        limit=str(exc.detail),
        key=get_client_key(request),
    )
    response = JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": "Too many requests. Please try again later.",
            "limit": str(exc.detail),
        },
    )
    return request.app.state.limiter._inject_headers(response, request.state.view_rate_limit)
