"""Request context middleware: gives every request an id and logs it.

WHY REQUEST IDs
---------------
A lesson page fires several calls at once (module list, content, view
tracking), and many students do the same.  Their log lines interleave:

  INFO  Module completed module=6f1c... student=a3e0...
  WARN  View tracking skipped: database commit failed
  INFO  GET /v1/courses/.../modules -> 200 (12.4ms)

Which request lost its view?  With the id in front of every line the
answer is a grep away:

  INFO  [9b2d] Module completed module=6f1c... student=a3e0...
  WARN  [71ac] View tracking skipped: database commit failed
  INFO  [71ac] POST /v1/courses/.../complete -> 202 (2003.1ms)

The gateway may send its own X-Request-ID so a trace can be followed
across services.  We accept it when it is short and printable, and
generate a UUID otherwise.  The id is echoed on the response.

WHY A CONTEXT VARIABLE
----------------------
Requests run concurrently on one event loop thread, so thread-local
storage would mix them up.  request_id_var (app.core.logging) is a
ContextVar: each request task sees its own value, and the logging
filter stamps it on every record without the service layer passing it
around.  The var is reset in ``finally`` so nothing leaks into the next
request served by the same task.

ACCESS LOG
----------
One line per request with method, path, status and duration.  Health
probes and Prometheus scrapes log at DEBUG; at INFO they would outnumber
real traffic.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.core.logging import request_id_var

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
_MAX_REQUEST_ID_LENGTH = 128


def _incoming_request_id(request: Request) -> str:
    raw = request.headers.get(REQUEST_ID_HEADER, "").strip()
    if raw and len(raw) <= _MAX_REQUEST_ID_LENGTH and raw.isprintable():
        return raw
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        req_id = _incoming_request_id(request)
        token = request_id_var.set(req_id)
        start = time.monotonic()
        try:
            response = await call_next(request)
            duration_ms = round((time.monotonic() - start) * 1000, 1)

            # Probes and scrapes would drown the access log.
            level = (
                logging.DEBUG
                if request.url.path in ("/health", "/ready", "/metrics")
                else logging.INFO
            )
            logger.log(
                level,
                "%s %s -> %d (%.1fms)",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "request_id": req_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
            response.headers[REQUEST_ID_HEADER] = req_id
            return response
        finally:
            request_id_var.reset(token)
