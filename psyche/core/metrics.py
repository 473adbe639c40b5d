"""Prometheus metrics for the application."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("app", "Psyche inference engine info")
APP_INFO.info({"version": "1.0.0", "name": "psyche"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

LLM_GATEWAY_CALLS = Counter(
    "llm_gateway_calls_total",
    "LLM gateway invocations by outcome",
    ["operation", "status"],
)

LLM_GATEWAY_LATENCY = Histogram(
    "llm_gateway_latency_seconds",
    "Latency of LLM gateway invocations that reached the model",
    ["operation"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60],
)

LLM_CIRCUIT_STATE = Gauge(
    "llm_circuit_state",
    "Circuit breaker state per operation (0 closed, 1 half-open, 2 open)",
    ["operation"],
)

CREDITS_CONSUMED = Counter(
    "credits_consumed_total",
    "Credits consumed from tenant ledgers",
    ["overage"],
)

INFERENCE_CYCLES = Counter(
    "inference_cycles_total",
    "Completed inference cycles by update reason",
    ["reason"],
)

INFERENCE_ESCALATIONS = Counter(
    "inference_escalations_total",
    "Cycles escalated to the LLM layer",
    ["reason"],
)


# --- Middleware ---

# Normalize dynamic path segments to reduce cardinality
_PATH_PREFIXES = ("/api/v1/inference/", "/api/v1/profiles/", "/api/v1/gateway/circuits/")


def _normalize_path(path: str) -> str:
    """Replace the user id / operation segment with {id} to avoid high cardinality."""
    for prefix in _PATH_PREFIXES:
        if path.startswith(prefix):
            rest = path[len(prefix) :]
            parts = rest.split("/", 1)
            if parts[0]:
                tail = f"/{parts[1]}" if len(parts) > 1 else ""
                return f"{prefix}{{id}}{tail}"
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
