"""
Request logging middleware.
Logs structured request/response info with timing.
NEVER logs: request bodies (user-data may contain password hashes).
"""
import re
import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from autoinstaller.core.request_context import set_request_id
from autoinstaller.core.metrics import metrics

logger = logging.getLogger("autoinstaller.request")

REQUEST_ID_HEADER = "X-Request-Id"

# Accept caller-supplied ids only if they look like ids
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

# /api/v1/build/status/{id}, /api/v1/build/{id}/cancel, ...
_BUILD_PATH_PATTERN = re.compile(r"^/api/v1/build/(?:[a-z]+/)?(build_[0-9a-f]+)")

# Polled endpoints, logged at DEBUG only
_QUIET_PATHS = ("/health", "/metrics")
_QUIET_PREFIXES = ("/api/v1/build/status/",)


def _request_id_from(request: Request) -> str:
    incoming = request.headers.get(REQUEST_ID_HEADER, "")
    if incoming and _REQUEST_ID_PATTERN.match(incoming):
        return incoming
    return str(uuid.uuid4())


def build_id_from_path(path: str) -> str | None:
    """Build id addressed by a request path, if any."""
    match = _BUILD_PATH_PATTERN.match(path)
    return match.group(1) if match else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    - Reuses the caller's X-Request-Id or generates one
    - Logs request/response with timing, tagged with the build id
    - Echoes X-Request-Id on the response
    - Updates metrics
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = set_request_id(_request_id_from(request))

        # Get client IP (handle proxied requests)
        client_ip = request.client.host if request.client else "unknown"
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()

        start_time = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = int((time.perf_counter() - start_time) * 1000)

        response.headers[REQUEST_ID_HEADER] = request_id

        metrics.inc("requests_total")
        status_class = response.status_code // 100
        if status_class == 2:
            metrics.inc("requests_2xx")
        elif status_class == 4:
            metrics.inc("requests_4xx")
        elif status_class == 5:
            metrics.inc("requests_5xx")

        path = request.url.path
        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
            "client_ip": client_ip,
        }
        build_id = build_id_from_path(path)
        if build_id:
            extra["job_id"] = build_id

        quiet = path in _QUIET_PATHS or path.startswith(_QUIET_PREFIXES)
        logger.log(logging.DEBUG if quiet else logging.INFO, "request", extra=extra)

        return response
