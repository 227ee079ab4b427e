"""Prometheus metrics and Sentry setup for the integration hub.

Integration counters are labelled by integration type so a single broken
provider shows up without digging through logs. HTTP metrics use the route
template (``/api/integrations/{integration_type}/webhook``) as the label.
"""

from __future__ import annotations

import time

import sentry_sdk
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Counter, Histogram, generate_latest
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP ─────────────────────────────────────────────────────────────────────

hub_http_requests_total = Counter(
    "hub_http_requests_total",
    "HTTP requests handled by the integration hub",
    ["method", "route", "status_class"],
)

hub_http_request_seconds = Histogram(
    "hub_http_request_seconds",
    "HTTP request latency",
    ["method", "route"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Integrations ─────────────────────────────────────────────────────────────

hook_deliveries_total = Counter(
    "integration_hook_deliveries_total",
    "Outbound hook deliveries by outcome",
    ["integration_type", "event_type", "outcome"],
)

hook_delivery_duration_seconds = Histogram(
    "integration_hook_delivery_duration_seconds",
    "Outbound hook delivery duration in seconds",
    ["integration_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

inbound_webhooks_total = Counter(
    "integration_inbound_webhooks_total",
    "Inbound provider webhooks by result",
    ["integration_type", "result"],
)

identify_requests_total = Counter(
    "integration_identify_requests_total",
    "Inbound identify calls by result",
    ["integration_type", "result"],
)

segment_sync_failures_total = Counter(
    "integration_segment_sync_failures_total",
    "Failed outbound segment membership calls",
    ["integration_type"],
)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts and times every request except scrapes of /metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        # Route is only set once routing matched; 404s share one series
        route = getattr(request.scope.get("route"), "path", None) or "unmatched"
        hub_http_requests_total.labels(request.method, route, f"{response.status_code // 100}xx").inc()
        hub_http_request_seconds.labels(request.method, route).observe(elapsed)
        return response


def get_metrics_response() -> Response:
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


# ── Sentry ───────────────────────────────────────────────────────────────────

_SCRUBBED_HEADERS = frozenset(
    {"authorization", "cookie", "x-hub-signature-256", "linear-signature", "payload-signature", "x-signature"}
)


def _scrub_request_headers(event: dict, hint: dict) -> dict:
    """Drop credential-bearing and signature headers from captured requests."""
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in _SCRUBBED_HEADERS:
                headers[name] = "[Filtered]"
    return event


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry; full tracing outside production, 10% in production."""
    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=0.1 if environment == "production" else 1.0,
        send_default_pii=False,
        integrations=[StarletteIntegration(), FastApiIntegration()],
        before_send=_scrub_request_headers,
    )
