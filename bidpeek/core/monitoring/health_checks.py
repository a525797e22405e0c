"""
Health checks with timings for liveness and readiness probes.
"""

import time
from typing import Dict, Any, Optional
import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from bidpeek.core.settings import settings
from .prometheus_metrics import observe_health_check_duration

logger = structlog.get_logger(__name__)


class HealthCheckResult:
    """Result of a health check with timing and status information."""

    def __init__(self, service: str, healthy: bool, duration_ms: float,
                 details: Optional[Dict[str, Any]] = None, error: Optional[str] = None):
        self.service = service
        self.healthy = healthy
        self.duration_ms = duration_ms
        self.details = details or {}
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "healthy": self.healthy,
            "duration_ms": round(self.duration_ms, 2),
            "details": self.details,
            "error": self.error,
        }


def check_database(session: Session, threshold_ms: float = 1000) -> HealthCheckResult:
    """Check store connectivity and response time."""
    start_time = time.time()

    try:
        row = session.execute(text("SELECT 1")).first()
        duration_ms = (time.time() - start_time) * 1000
        healthy = bool(row) and row[0] == 1 and duration_ms < threshold_ms
        observe_health_check_duration("database", duration_ms / 1000)
        return HealthCheckResult(
            service="database",
            healthy=healthy,
            duration_ms=duration_ms,
            details={"query_test": "passed" if row else "failed", "threshold_ms": threshold_ms}
        )
    except SQLAlchemyError as e:
        duration_ms = (time.time() - start_time) * 1000
        observe_health_check_duration("database", duration_ms / 1000)
        logger.warning("Database health check failed", error=str(e))
        return HealthCheckResult(
            service="database",
            healthy=False,
            duration_ms=duration_ms,
            error=str(e)
        )


def basic_health_check() -> Dict[str, Any]:
    """Liveness: the process is up."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": time.time(),
    }


def readiness_check(session: Session) -> Dict[str, Any]:
    """Readiness: the store answers within its threshold."""
    database = check_database(session)
    return {
        "status": "ready" if database.healthy else "not_ready",
        "checks": {"database": database.to_dict()},
        "timestamp": time.time(),
    }
