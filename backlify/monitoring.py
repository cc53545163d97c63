"""
Monitoring and metrics.
Psychology: Proactive observability with actionable metrics.
Intention: Count what the control plane admits, rejects and bills.
"""
import logging
import time
from datetime import datetime, timezone

from fastapi import FastAPI, Response
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

# ============================================================================
# PROMETHEUS METRICS
# ============================================================================

# HTTP Metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)

REQUEST_LATENCY = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0]
)

REQUEST_IN_PROGRESS = Gauge(
    'http_requests_in_progress',
    'Number of HTTP requests in progress',
    ['method']
)

# Control plane metrics
ADMISSION_REJECTIONS = Counter(
    'admission_rejections_total',
    'Requests rejected by the admission pipeline',
    ['stage', 'status_code']
)

SECURITY_EVENTS = Counter(
    'security_events_total',
    'Security events written to the audit sink',
    ['type']
)

PAYMENT_CALLBACKS = Counter(
    'payment_callbacks_total',
    'Gateway callbacks by outcome',
    ['outcome']
)

GATEWAY_REQUESTS = Counter(
    'gateway_requests_total',
    'Outbound card gateway calls',
    ['operation', 'result']
)

USAGE_LIMIT_REJECTIONS = Counter(
    'usage_limit_rejections_total',
    'Requests rejected for exceeding plan limits',
    ['plan', 'kind']
)

# Error Metrics
ERROR_COUNT = Counter(
    'errors_total',
    'Total errors',
    ['error_type', 'endpoint', 'severity']
)

SYSTEM_UPTIME = Gauge(
    'system_uptime_seconds',
    'System uptime in seconds'
)

# ============================================================================
# MONITORING MIDDLEWARE
# ============================================================================

SKIPPED_PATHS = ('/metrics', '/health')


class MonitoringMiddleware:
    """ASGI middleware recording request count and latency"""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http" or scope["path"] in SKIPPED_PATHS:
            await self.app(scope, receive, send)
            return

        method = scope["method"]
        status_code = 500
        start_time = time.perf_counter()

        async def send_wrapper(message: Message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        REQUEST_IN_PROGRESS.labels(method=method).inc()
        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as e:
            ERROR_COUNT.labels(
                error_type=type(e).__name__,
                endpoint=scope["path"],
                severity="error"
            ).inc()
            raise
        finally:
            REQUEST_IN_PROGRESS.labels(method=method).dec()
            route = scope.get("route")
            endpoint = getattr(route, "path", None) or "unmatched"
            REQUEST_COUNT.labels(method=method, endpoint=endpoint, status_code=status_code).inc()
            REQUEST_LATENCY.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - start_time
            )

# ============================================================================
# BUSINESS METRICS COLLECTION
# ============================================================================

class BusinessMetrics:
    """Collect control-plane specific metrics"""

    @staticmethod
    def track_rejection(stage: str, status_code: int):
        ADMISSION_REJECTIONS.labels(stage=stage, status_code=status_code).inc()

    @staticmethod
    def track_security_event(event_type: str):
        SECURITY_EVENTS.labels(type=event_type).inc()

    @staticmethod
    def track_callback(outcome: str):
        PAYMENT_CALLBACKS.labels(outcome=outcome).inc()

    @staticmethod
    def track_gateway_call(operation: str, result: str):
        GATEWAY_REQUESTS.labels(operation=operation, result=result).inc()

    @staticmethod
    def track_usage_rejection(plan: str, kind: str):
        USAGE_LIMIT_REJECTIONS.labels(plan=plan, kind=kind).inc()

    @staticmethod
    def track_error(error_type: str, endpoint: str, severity: str = "error"):
        ERROR_COUNT.labels(
            error_type=error_type,
            endpoint=endpoint,
            severity=severity
        ).inc()

# ============================================================================
# METRICS ENDPOINT
# ============================================================================

def setup_metrics_endpoint(app: FastAPI):
    """Setup metrics endpoint for Prometheus scraping"""

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint():
        """Prometheus metrics endpoint"""
        started = getattr(app.state, "start_time", None)
        if started is not None:
            SYSTEM_UPTIME.set((datetime.now(timezone.utc) - started).total_seconds())

        return Response(
            content=generate_latest(REGISTRY),
            media_type="text/plain"
        )


def setup_monitoring(app: FastAPI):
    """Setup monitoring for the application"""
    app.state.start_time = datetime.now(timezone.utc)
    app.add_middleware(MonitoringMiddleware)
    setup_metrics_endpoint(app)
    return app
