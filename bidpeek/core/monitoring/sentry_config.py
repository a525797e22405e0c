"""
Sentry integration for the BidPeek entitlement service.
Provides exception tracking and performance monitoring.
"""

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
import structlog

from bidpeek.core.settings import settings

logger = structlog.get_logger(__name__)

_SKIPPED_TRANSACTIONS = ["/healthz", "/readyz", "/metrics"]


def init_sentry() -> bool:
    """Initialize Sentry when a DSN is configured. Returns whether it was enabled."""
    if not settings.sentry_dsn:
        logger.info("Sentry DSN not configured, skipping Sentry initialization")
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.release_version,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        attach_stacktrace=True,
        send_default_pii=False,  # Don't send PII for privacy
        max_breadcrumbs=50,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=_before_send_filter,
        before_send_transaction=_before_send_transaction_filter,
    )

    sentry_sdk.set_tag("service", "bidpeek-entitlements")

    logger.info(
        "sentry_initialized",
        environment=settings.environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )
    return True


def _before_send_filter(event, hint):
    """Strip credentials and signatures before sending to Sentry."""
    headers = event.get("request", {}).get("headers", {})
    for header in ("authorization", "Authorization", "stripe-signature", "Stripe-Signature"):
        if header in headers:
            headers[header] = "[Filtered]"

    if event.get("transaction") in _SKIPPED_TRANSACTIONS:
        return None

    return event


def _before_send_transaction_filter(event, hint):
    """Skip health check transactions."""
    if event.get("transaction") in _SKIPPED_TRANSACTIONS:
        return None
    return event


def capture_principal_context(principal_key: str):
    """Tag the current scope with the principal being served."""
    sentry_sdk.set_tag("principal_kind", principal_key.split(":", 1)[0])
    sentry_sdk.set_user({"id": principal_key})
