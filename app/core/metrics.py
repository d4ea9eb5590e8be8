"""Prometheus metrics inventory.

Every metric the service exports is declared here; the modules that own
the behaviour import and increment them.  Prometheus scrapes the text
exposition at /metrics.

HTTP metrics are filled in by MetricsMiddleware.  The progress metrics
count domain transitions, which is what dashboards actually ask about:
"how many students completed a module today", "is view tracking
failing".
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Module progress metrics
# ---------------------------------------------------------------------------

CONTENT_VIEWS = Counter(
    "content_views_total",
    "Content view events recorded",
    ["result"],  # "new" or "repeat"
)

MODULE_COMPLETIONS = Counter(
    "module_completions_total",
    "First-completion transitions of a module for a student",
    ["trigger"],  # "content_view" or "sync"
)

MODULE_UNLOCKS = Counter(
    "module_unlocks_total",
    "Next modules unlocked by a completion",
)

VIEW_TRACKING_FAILURES = Counter(
    "view_tracking_failures_total",
    "Best-effort view tracking calls that were swallowed",
    ["reason"],  # "store_unavailable" or "timeout"
)

SEQUENCE_INTEGRITY_ERRORS = Counter(
    "module_sequence_integrity_errors_total",
    "Courses evaluated with duplicate module order_index values",
)
