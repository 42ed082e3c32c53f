"""Request context middleware.

Binds ``request_id`` and, for routes addressed by ``?repo_url=``, the
normalized ``repo_id`` (the cache key) into the log context so every line
logged while serving the request carries them. Also measures duration and
writes one structured request log line.
"""

import logging
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from ..core.logging_config import bind_log_context
from ..exceptions import ValidationError
from ..services.records import normalize_repo_id

logger = logging.getLogger(__name__)

# Health checks and the API root are logged at debug level.
_QUIET_PATHS = frozenset({"/", "/health"})


def request_repo_id(request: Request) -> Optional[str]:
    """The cache key named by the ``repo_url`` query parameter, if valid."""
    repo_url = request.query_params.get("repo_url")
    if not repo_url:
        return None
    try:
        return normalize_repo_id(repo_url)
    except ValidationError:
        # The route itself rejects it with a 400.
        return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds request and repository context, times the request and logs it."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        repo_id = request_repo_id(request)

        with bind_log_context(request_id=rid, repo_id=repo_id):
            start = time.monotonic()
            response = await call_next(request)
            duration_ms = round((time.monotonic() - start) * 1000, 1)

            response.headers["X-Request-ID"] = rid
            response.headers["X-Response-Time"] = f"{duration_ms}ms"

            extra = {
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            }
            if repo_id:
                extra["cache_key"] = repo_id
            log = logger.debug if request.url.path in _QUIET_PATHS else logger.info
            log(f"{request.method} {request.url.path} {response.status_code}", extra=extra)

        return response
