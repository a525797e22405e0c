"""
Shared rate limiter for the client-facing endpoints.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
import structlog

from bidpeek.core.settings import settings

logger = structlog.get_logger(__name__)

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.rate_limit_storage_uri,
    enabled=settings.enable_rate_limiting
)

if settings.enable_rate_limiting:
    logger.info("Rate limiting enabled", storage_uri=settings.rate_limit_storage_uri)
else:
    logger.info("Rate limiting disabled via configuration")
