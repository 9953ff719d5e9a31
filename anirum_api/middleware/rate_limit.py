"""Request rate limiting using slowapi.

Complements the per-recipient resend window of the verification flows:
this layer throttles callers by client IP, before any session logic
runs. Limits are applied per endpoint with ``@limiter.limit()``.
"""

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from anirum_api.config import settings

# In-memory storage during tests (no Redis dependency), otherwise Redis
_storage_uri = (
    "memory://"
    if settings.testing
    else (settings.redis_url if settings.redis_url else "memory://")
)

SEND_CODE_LIMIT = "10/minute"
VERIFY_CODE_LIMIT = "20/minute"
# Telegram delivers from a small pool of addresses; keep this generous
WEBHOOK_LIMIT = "120/minute"
GUIDE_TAGGING_LIMIT = "10/minute"


def _get_real_client_ip(request: Request) -> str:
    """Client IP, respecting X-Forwarded-For behind a reverse proxy."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(
    key_func=_get_real_client_ip,
    storage_uri=_storage_uri,
    enabled=not settings.testing,
)


async def rate_limit_exceeded_handler(
    request: Request, exc: RateLimitExceeded
) -> JSONResponse:
    """Return a 429 in the same ``detail`` shape the verification endpoints use."""
    return JSONResponse(
        status_code=429,
        content={
            "detail": {
                "code": "rate_limited",
                "message": f"Rate limit exceeded: {exc.detail}",
            }
        },
    )
