"""
Security utilities: bearer token verification and webhook signature checks.
"""
import hashlib
import hmac
import time
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from jose import JWTError, jwt
import structlog

from bidpeek.core.settings import settings
from bidpeek.core.timeutils import utcnow

logger = structlog.get_logger(__name__)


class SecurityUtils:
    """Security utility functions."""

    @staticmethod
    def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
        """Create JWT access token (used by tooling and tests; the auth provider issues real ones)."""
        to_encode = data.copy()
        if expires_delta:
            expire = utcnow() + expires_delta
        else:
            expire = utcnow() + timedelta(hours=24)

        to_encode.update({"exp": expire})
        if settings.jwt_audience and "aud" not in to_encode:
            to_encode["aud"] = settings.jwt_audience
        return jwt.encode(
            to_encode,
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm
        )

    @staticmethod
    def verify_token(token: str) -> Optional[dict]:
        """Verify and decode JWT token."""
        options = {"verify_aud": bool(settings.jwt_audience)}
        try:
            payload = jwt.decode(
                token,
                settings.jwt_secret,
                algorithms=[settings.jwt_algorithm],
                audience=settings.jwt_audience or None,
                options=options
            )
            return payload
        except JWTError as e:
            logger.info("Rejected bearer token", error=str(e))
            return None

    @staticmethod
    def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
        """
        Pull the token out of an Authorization header.

        Returns None when no header was sent. A header with a different scheme
        or an empty token yields an empty string so callers can reject it.
        """
        if authorization is None or not authorization.strip():
            return None
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer":
            return ""
        return token.strip()


def _parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    """Split ``t=<unix>,v1=<hex>[,v1=<hex>]`` into timestamp and candidate signatures."""
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def compute_webhook_signature(payload: bytes, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 over ``<timestamp>.<payload>``, hex encoded."""
    signed_payload = str(timestamp).encode("utf-8") + b"." + payload
    return hmac.new(
        secret.encode("utf-8"),
        signed_payload,
        hashlib.sha256
    ).hexdigest()


def build_signature_header(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Produce a provider-style signature header for a payload."""
    if timestamp is None:
        timestamp = int(time.time())
    return f"t={timestamp},v1={compute_webhook_signature(payload, secret, timestamp)}"


def verify_webhook_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[datetime] = None
) -> bool:
    """
    Verify a provider webhook signature header.

    Args:
        payload: Raw request body bytes
        signature_header: Value of the Stripe-Signature header
        secret: Webhook signing secret
        tolerance_seconds: Maximum accepted age of the signed timestamp
        now: Override for the current time (naive UTC)

    Returns:
        True if any v1 signature matches and the timestamp is fresh
    """
    if not signature_header or not secret:
        return False

    timestamp, signatures = _parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        logger.warning("Malformed webhook signature header")
        return False

    current = (now or utcnow()) - datetime(1970, 1, 1)
    age = current.total_seconds() - timestamp
    if tolerance_seconds and abs(age) > tolerance_seconds:
        logger.warning("Webhook signature timestamp outside tolerance", age_seconds=int(age))
        return False

    expected = compute_webhook_signature(payload, secret, timestamp)
    # constant-time comparison against every candidate
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)
