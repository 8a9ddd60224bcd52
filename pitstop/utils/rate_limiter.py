"""
Per-IP rate limits for the unauthenticated auth endpoints (login,
registration, verification and password reset).

Decorated routes must accept a `request: Request` argument:

    @router.post("/login")
    @limiter.limit(RateLimits.LOGIN)
    async def login(request: Request, ...):

RATE_LIMIT_ENABLED=false turns every limit off.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request, status
from fastapi.responses import JSONResponse
import logging

from pitstop.config import settings

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 60
PROXY_HEADERS = ("X-Forwarded-For", "X-Real-IP")


def get_client_ip(request: Request) -> str:
    """First address from a proxy header, else the socket peer"""
    for header in PROXY_HEADERS:
        value = request.headers.get(header)
        if value:
            return value.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(key_func=get_client_ip, enabled=settings.rate_limit_enabled)


class RateLimits:
    LOGIN = "5/minute"
    REGISTER = "3/minute"
    PASSWORD_RESET = "3/minute"
    VERIFY_EMAIL = "10/minute"


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    limit = str(getattr(exc, "detail", "") or "rate limit")
    logger.warning(f"Too many requests from {get_client_ip(request)} to {request.url.path} ({limit})")

    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "success": False,
            "msg": "Too many requests. Please try again later.",
            "retry_after": RETRY_AFTER_SECONDS,
        },
        headers={"Retry-After": str(RETRY_AFTER_SECONDS), "X-RateLimit-Limit": limit},
    )
