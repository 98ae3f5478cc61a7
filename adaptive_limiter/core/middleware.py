"""HTTP middleware for request ID propagation.

Every request/response pair carries a correlation ID: the incoming
``X-Request-ID`` header (name configurable via ``LOG_REQUEST_ID_HEADER``) or
a freshly generated UUID. The ID lives in contextvars for the lifetime of
the request so log records and error envelopes can include it.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request, Response

from adaptive_limiter.core.config import settings
from adaptive_limiter.core.logging import clear_request_id, set_request_id

logger = logging.getLogger(__name__)


async def request_id_middleware(request: Request, call_next) -> Response:
    """Attach a request ID and duration to each response.

    Side Effects:
        - Sets request_id in contextvars for the duration of the request
        - Adds the request ID and ``X-Request-Duration-ms`` response headers
        - Logs ``http.request_completed`` with method, path, status and duration
    """
    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "http.request_completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
