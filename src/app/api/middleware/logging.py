"""Structured access log and structlog configuration.

Each request gets a request id: the caller's X-Request-ID when it looks
sane (cron runners and the front end send one), otherwise a new UUID. The
id, the caller's user id and role (from the JWT) are bound to structlog
contextvars, so every log line emitted while handling the request, such
as ``deal_truth.*`` or ``reconciliation.*``, carries them. The id is
returned in the X-Request-ID response header.

Probe traffic (/health, /metrics) is logged at debug level only.
"""

from __future__ import annotations

import logging
import re
import time
import uuid

import structlog
from fastapi import Request, Response
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.config import Environment, get_settings

logger = structlog.get_logger(__name__)

QUIET_PATHS = ("/health", "/metrics")
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


def configure_structlog() -> None:
    """JSON lines in production, console output elsewhere, at LOG_LEVEL."""
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.ENVIRONMENT == Environment.production:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def request_id_for(request: Request) -> str:
    incoming = request.headers.get("X-Request-ID")
    if incoming and _REQUEST_ID_RE.match(incoming):
        return incoming
    return str(uuid.uuid4())


def _caller_claims(request: Request) -> dict:
    """user_id and role from a Bearer token, best effort (no verification errors surface)."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return {}
    settings = get_settings()
    try:
        payload = jwt.decode(
            auth_header[7:],
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        return {}
    return {"user_id": payload.get("sub"), "role": payload.get("role")}


class LoggingMiddleware(BaseHTTPMiddleware):
    """One ``http.request`` line per request, with timing and tenant."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request_id_for(request)
        start_time = time.monotonic()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, **_caller_claims(request))

        fields = {"method": request.method, "path": request.url.path}
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "http.request_failed",
                status_code=500,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                tenant_id=getattr(request.state, "tenant_id", None),
                **fields,
            )
            structlog.contextvars.clear_contextvars()
            raise

        response.headers["X-Request-ID"] = request_id

        if request.url.path.startswith(QUIET_PATHS):
            log_method = logger.debug
        elif response.status_code >= 500:
            log_method = logger.error
        elif response.status_code >= 400:
            log_method = logger.warning
        else:
            log_method = logger.info

        log_method(
            "http.request",
            status_code=response.status_code,
            duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            tenant_id=getattr(request.state, "tenant_id", None),
            **fields,
        )
        structlog.contextvars.clear_contextvars()
        return response
