"""
Subscription status and plan catalog router.
"""
import structlog
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Header
from sqlmodel import Session

from bidpeek.api.services import EntitlementsService, IdentityResolver
from bidpeek.core.plans import get_catalog
from bidpeek.db.session import get_session

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["subscriptions"])


@router.get("/subscription-status/{device_id}")
def get_subscription_status(
    device_id: str,
    authorization: Optional[str] = Header(None),
    session: Session = Depends(get_session)
) -> Dict[str, Any]:
    """
    Combined subscription, usage and entitlement snapshot.

    A valid bearer token takes precedence over the device ID in the path.
    """
    principal = IdentityResolver(session).resolve(authorization, device_id)
    snapshot = EntitlementsService(session).get_status_snapshot(principal)

    logger.info(
        "Subscription status requested",
        principal=principal.key,
        tier=snapshot["tier"],
        can_scan=snapshot["canScan"]
    )
    return snapshot


@router.get("/plans")
def get_plans() -> Dict[str, Any]:
    """Tiers, allotments, features, prices and scan packs."""
    return get_catalog()
