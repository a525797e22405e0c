"""
Prometheus metrics for the BidPeek entitlement service.
Tracks entitlement checks, scan recording, webhook reconciliation and HTTP traffic.
"""

from prometheus_client import Counter, Histogram, CollectorRegistry, CONTENT_TYPE_LATEST, generate_latest
from fastapi import Response
import structlog

logger = structlog.get_logger(__name__)

# Create custom registry for our metrics
registry = CollectorRegistry()

# Entitlement Metrics
entitlement_checks = Counter(
    'bidpeek_entitlement_checks_total',
    'Entitlement resolutions by tier and outcome',
    ['tier', 'result'],
    registry=registry
)

entitlement_degraded = Counter(
    'bidpeek_entitlement_fail_open_total',
    'Entitlement checks that failed open because the store was unavailable',
    registry=registry
)

# Ledger Metrics
scans_recorded = Counter(
    'bidpeek_scans_recorded_total',
    'Scan record attempts by kind and outcome',
    ['action_kind', 'result'],
    registry=registry
)

credit_grants = Counter(
    'bidpeek_credit_grants_total',
    'Credit grant attempts by outcome',
    ['result'],
    registry=registry
)

# Webhook Metrics
webhook_events = Counter(
    'bidpeek_webhook_events_total',
    'Total webhook events processed',
    ['event_type', 'status'],
    registry=registry
)

# Identity Metrics
identity_merges = Counter(
    'bidpeek_identity_merges_total',
    'Device histories merged into user accounts',
    registry=registry
)

# HTTP Metrics
http_requests_total = Counter(
    'bidpeek_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=registry
)

http_request_duration = Histogram(
    'bidpeek_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf')],
    registry=registry
)

# Health Check Metrics
health_check_duration = Histogram(
    'bidpeek_health_check_duration_seconds',
    'Health check duration in seconds',
    ['service'],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, float('inf')],
    registry=registry
)


class MetricsCollector:
    """Centralized metrics collection and helper methods."""

    def __init__(self):
        self.registry = registry

    def get_metrics_response(self) -> Response:
        """Return Prometheus metrics as HTTP response."""
        metrics_data = generate_latest(self.registry)
        return Response(
            content=metrics_data,
            media_type=CONTENT_TYPE_LATEST
        )


# Global metrics collector instance
metrics = MetricsCollector()


def increment_entitlement_checks(tier: str, result: str):
    entitlement_checks.labels(tier=tier, result=result).inc()


def increment_entitlement_degraded():
    entitlement_degraded.inc()
    logger.debug("entitlement_fail_open_counted")


def increment_scans_recorded(action_kind: str, result: str):
    scans_recorded.labels(action_kind=action_kind, result=result).inc()


def increment_credit_grants(result: str):
    credit_grants.labels(result=result).inc()


def increment_webhook_events(event_type: str, status: str):
    """Increment webhook event counter."""
    webhook_events.labels(event_type=event_type, status=status).inc()


def increment_identity_merges():
    identity_merges.inc()


def increment_http_requests(method: str, endpoint: str, status_code: str):
    """Increment HTTP request counter."""
    http_requests_total.labels(method=method, endpoint=endpoint, status_code=status_code).inc()


def observe_http_request_duration(method: str, endpoint: str, duration_seconds: float):
    """Record HTTP request duration."""
    http_request_duration.labels(method=method, endpoint=endpoint).observe(duration_seconds)


def observe_health_check_duration(service: str, duration_seconds: float):
    health_check_duration.labels(service=service).observe(duration_seconds)
