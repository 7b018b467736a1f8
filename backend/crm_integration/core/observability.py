"""
Observability utilities for monitoring and metrics.

Provides:
- Prometheus metrics export
- Request tracking
- CRM client and sync job counters
"""

import time
import logging
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

logger = logging.getLogger(__name__)

# Prometheus metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

http_requests_in_progress = Gauge(
    'http_requests_in_progress',
    'Number of HTTP requests in progress',
    ['method', 'endpoint']
)

crm_requests_total = Counter(
    'crm_requests_total',
    'Total requests issued to the external CRM',
    ['operation', 'status']  # status: success, demo, rate_limited, or error class
)

crm_request_duration_seconds = Histogram(
    'crm_request_duration_seconds',
    'External CRM request duration in seconds',
    ['operation']
)

crm_sync_outcomes_total = Counter(
    'crm_sync_outcomes_total',
    'Contact sync attempts by terminal or rescheduled state',
    ['state']
)

tasks_created_total = Counter(
    'tasks_created_total',
    'Total tasks created',
    ['task_type']
)

tasks_completed_total = Counter(
    'tasks_completed_total',
    'Total tasks completed',
    ['task_type', 'status']
)


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect HTTP request metrics.

    Tracks:
    - Request count by method, endpoint, status
    - Request duration
    - Requests in progress
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics for /metrics endpoint to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        endpoint = request.url.path

        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()

        try:
            response = await call_next(request)
            status = response.status_code
        except Exception as e:
            http_requests_total.labels(
                method=method,
                endpoint=endpoint,
                status=500
            ).inc()
            logger.error(f"Request failed: {method} {endpoint}: {e}")
            raise
        finally:
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()
            duration = time.time() - start_time
            http_request_duration_seconds.labels(
                method=method,
                endpoint=endpoint
            ).observe(duration)

        http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status=status
        ).inc()

        return response


async def metrics_endpoint(request: Request) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus exposition format.
    """
    metrics = generate_latest()
    return Response(content=metrics, media_type=CONTENT_TYPE_LATEST)


def setup_metrics(app) -> None:
    """
    Configure metrics collection for FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_middleware(MetricsMiddleware)
    app.add_route("/metrics", metrics_endpoint)

    logger.info("Prometheus metrics configured at /metrics")


# Utility functions for tracking custom metrics

def track_crm_request(operation: str, status: str, duration: float = 0.0) -> None:
    """Track a call to the external CRM."""
    crm_requests_total.labels(operation=operation, status=status).inc()
    crm_request_duration_seconds.labels(operation=operation).observe(duration)


def track_sync_outcome(state: str) -> None:
    """Track the state a contact sync attempt ended in."""
    crm_sync_outcomes_total.labels(state=state).inc()


def track_task(task_type: str, state: str) -> None:
    """Track task creation or completion."""
    if state == "pending":
        tasks_created_total.labels(task_type=task_type).inc()
    elif state in ["completed", "failed", "discarded"]:
        tasks_completed_total.labels(task_type=task_type, status=state).inc()
