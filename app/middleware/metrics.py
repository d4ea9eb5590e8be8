"""Prometheus metrics middleware: instruments every HTTP request.

For each request this middleware:
  1. Increments the ACTIVE_REQUESTS gauge (decremented on completion)
  2. Times the request
  3. On completion increments REQUEST_COUNT by method/endpoint/status
     and observes the duration in the REQUEST_DURATION histogram

MIDDLEWARE vs PER-ENDPOINT TIMING
---------------------------------
Timing each handler by hand means a new endpoint is invisible until
someone remembers to add the boilerplate.  A middleware sees every
request, including 401s rejected by the auth dependency before any
handler code runs.

THE ENDPOINT LABEL
------------------
The label is the matched route template, for example

  /v1/courses/{course_id}/modules/{module_id}/content/{content_id}/complete

and not the raw URL.  Raw paths carry course, module and content ids,
so every student would mint new label values and the series count would
grow without bound.  Starlette stores the matched route in
``scope["route"]`` while routing, which is why the label is read after
call_next returns.  Requests that match no route share the "unmatched"
label.

/metrics itself is skipped: scrapes are not traffic.
"""

from __future__ import annotations

import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.core.metrics import ACTIVE_REQUESTS, REQUEST_COUNT, REQUEST_DURATION

_UNMATCHED = "unmatched"


def _endpoint_label(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path if path else _UNMATCHED


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        # Scrapes are not traffic.
        if request.url.path == "/metrics":
            return await call_next(request)

        ACTIVE_REQUESTS.inc()
        start = time.monotonic()
        status_code = "500"

        try:
            response = await call_next(request)
            status_code = str(response.status_code)
        finally:
            duration = time.monotonic() - start
            ACTIVE_REQUESTS.dec()
            # The router fills scope["route"] during call_next.
            endpoint = _endpoint_label(request)
            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=status_code,
            ).inc()
            REQUEST_DURATION.labels(
                method=request.method,
                endpoint=endpoint,
            ).observe(duration)

        return response
