"""Prometheus metrics endpoint.

Prometheus calls this endpoint every scrape interval to collect current
metric values.  It returns plain text in the Prometheus exposition
format, not JSON.

Example output:
  # HELP content_views_total Content view events recorded
  # TYPE content_views_total counter
  content_views_total{result="new"} 5123.0
  content_views_total{result="repeat"} 842.0
  # HELP module_unlocks_total Next modules unlocked by a completion
  # TYPE module_unlocks_total counter
  module_unlocks_total 611.0

Alongside the HTTP metrics from MetricsMiddleware this exposes the
progress counters from app.core.metrics: views, completions, unlocks,
untracked views and module sequence integrity errors.  A rising
view_tracking_failures_total means students are getting 202
"tracked: false" and their progress is falling behind what they read.

SECURITY NOTE: keep /metrics off the public ingress (internal port or
scraper allow-list).  The counters reveal traffic levels and error
rates, though no student or course identifiers appear in any label.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
