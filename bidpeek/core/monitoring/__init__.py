"""
Monitoring and observability package for the BidPeek entitlement service.
"""

from .sentry_config import init_sentry, capture_principal_context
from .prometheus_metrics import (
    metrics,
    increment_entitlement_checks,
    increment_entitlement_degraded,
    increment_scans_recorded,
    increment_credit_grants,
    increment_webhook_events,
    increment_identity_merges,
    increment_http_requests,
    observe_http_request_duration,
)

__all__ = [
    "init_sentry",
    "capture_principal_context",
    "metrics",
    "increment_entitlement_checks",
    "increment_entitlement_degraded",
    "increment_scans_recorded",
    "increment_credit_grants",
    "increment_webhook_events",
    "increment_identity_merges",
    "increment_http_requests",
    "observe_http_request_duration",
]
