"""
Scan metering router: pre-check and record metered scans.

The mobile client calls /check-scan-limit before a scan and /record-scan
after it. Recording never fails the user's action; a ledger problem is
reported as ``success: false`` with a 200.
"""
import structlog
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Header, Request
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from slowapi.util import get_remote_address
from sqlmodel import Session

from bidpeek.api.limiter import limiter
from bidpeek.api.services import EntitlementsService, IdentityResolver, ScanLedgerService
from bidpeek.core.config import ActionKind, parse_action_kind
from bidpeek.core.monitoring import capture_principal_context
from bidpeek.core.settings import settings
from bidpeek.db.session import get_session

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["scans"])


def _action_kind(value: Optional[str]) -> Optional[ActionKind]:
    if value is None:
        return None
    kind = parse_action_kind(value)
    if kind is None:
        raise ValueError(f"Invalid scan type. Must be one of: {[k.value for k in ActionKind]}")
    return kind


class CheckScanRequest(BaseModel):
    """Pre-check request. Identity comes from the bearer token and/or device ID."""
    model_config = ConfigDict(populate_by_name=True)

    device_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("deviceId", "device_id"))
    action_kind: Optional[ActionKind] = Field(
        default=None,
        validation_alias=AliasChoices("scanType", "scan_type", "actionKind", "action_kind")
    )

    @field_validator("action_kind", mode="before")
    @classmethod
    def validate_action_kind(cls, v):
        return _action_kind(v)


class RecordScanRequest(BaseModel):
    """Record request for a scan that already happened."""
    model_config = ConfigDict(populate_by_name=True)

    device_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("deviceId", "device_id"))
    action_kind: ActionKind = Field(
        validation_alias=AliasChoices("scanType", "scan_type", "actionKind", "action_kind")
    )
    correlation_id: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("correlationId", "correlation_id", "searchId", "search_id")
    )
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("action_kind", mode="before")
    @classmethod
    def validate_action_kind(cls, v):
        return _action_kind(v)


@router.post("/check-scan-limit")
@limiter.limit(settings.check_scan_rate_limit)
def check_scan_limit(
    request: Request,
    payload: CheckScanRequest,
    authorization: Optional[str] = Header(None),
    session: Session = Depends(get_session)
) -> Dict[str, Any]:
    """Can the caller perform one more scan right now?"""
    principal = IdentityResolver(session).resolve(authorization, payload.device_id)
    capture_principal_context(principal.key)

    decision = EntitlementsService(session).can_scan(principal, payload.action_kind)

    logger.info(
        "Scan limit checked",
        principal=principal.key,
        action_kind=payload.action_kind.value if payload.action_kind else None,
        can_scan=decision.can_scan,
        remote_addr=get_remote_address(request)
    )

    response = {
        "canScan": decision.can_scan,
        "usageInfo": decision.entitlement.usage_info(),
    }
    if decision.reason:
        response["reason"] = decision.reason
    return response


@router.post("/record-scan")
@limiter.limit(settings.record_scan_rate_limit)
def record_scan(
    request: Request,
    payload: RecordScanRequest,
    authorization: Optional[str] = Header(None),
    session: Session = Depends(get_session)
) -> Dict[str, Any]:
    """Append a completed scan to the ledger (idempotent on correlation ID)."""
    principal = IdentityResolver(session).resolve(authorization, payload.device_id)
    capture_principal_context(principal.key)

    result = ScanLedgerService(session).record_scan(
        principal,
        payload.action_kind,
        payload.correlation_id,
        metadata=payload.metadata
    )

    return {
        "success": result.recorded,
        "duplicate": result.duplicate,
        "scanId": result.record_id,
    }


@router.get("/usage/{device_id}")
def get_usage(
    device_id: str,
    authorization: Optional[str] = Header(None),
    session: Session = Depends(get_session)
) -> Dict[str, Any]:
    """Current-period usage for the caller."""
    principal = IdentityResolver(session).resolve(authorization, device_id)
    entitlement = EntitlementsService(session).get_entitlement(principal)

    return {
        "principal": principal.key,
        **entitlement.usage_info(),
        "month": entitlement.period_start.strftime("%Y-%m"),
    }
