"""Correlation ID middleware.

Pure ASGI middleware: BaseHTTPMiddleware would run the endpoint in a
separate task and break the correlation context variable.
"""

import re
import time
import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from anirum_api.logging_config import correlation_id_ctx, get_logger

logger = get_logger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Incoming ids are echoed into logs and headers, so keep them tame
_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")

# Probe endpoints are hit constantly and only logged on failure
_QUIET_PATH_PREFIXES = ("/health",)


def _incoming_correlation_id(scope: Scope) -> str | None:
    for name, value in scope.get("headers", []):
        if name == b"x-correlation-id":
            candidate = value.decode("latin-1").strip()
            if _VALID_CORRELATION_ID.match(candidate):
                return candidate
            return None
    return None


class CorrelationIdMiddleware:
    """Tags every HTTP request with a correlation ID.

    Reuses a well-formed ``X-Correlation-ID`` request header or generates
    a UUID, exposes it to log records through ``correlation_id_ctx`` and
    echoes it in the response headers.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        correlation_id = _incoming_correlation_id(scope) or str(uuid.uuid4())
        token = correlation_id_ctx.set(correlation_id)

        method = scope.get("method", "")
        path = scope.get("path", "")
        quiet = path.startswith(_QUIET_PATH_PREFIXES)
        start_time = time.perf_counter()
        status_code: int | None = None

        if not quiet:
            logger.info("Request started", method=method, path=path)

        async def send_with_header(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status")
                headers = list(message.get("headers", []))
                headers.append(
                    (CORRELATION_ID_HEADER.lower().encode(), correlation_id.encode())
                )
                message = {**message, "headers": headers}
            await send(message)

        try:
            await self.app(scope, receive, send_with_header)
        except Exception:
            logger.exception(
                "Request failed",
                method=method,
                path=path,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            raise
        else:
            if not quiet or (status_code or 0) >= 500:
                logger.info(
                    "Request completed",
                    method=method,
                    path=path,
                    status_code=status_code,
                    duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
        finally:
            correlation_id_ctx.reset(token)
