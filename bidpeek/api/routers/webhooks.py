"""
Webhooks router for the payment provider.

Signature failures and malformed payloads are answered with 400 and never
retried into effect.
Unresolvable principals (409) and store failures (503) are non-200 so the
provider redelivers the event later.
"""
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from sqlmodel import Session
import structlog

from bidpeek.api.services import WebhookReconciler
from bidpeek.db.session import get_session

router = APIRouter(tags=["webhooks"])
logger = structlog.get_logger(__name__)


async def _handle(request: Request, signature: Optional[str], session: Session) -> Dict[str, Any]:
    # raw bytes are needed for the signature check
    payload = await request.body()
    reconciler = WebhookReconciler(session)
    result = await run_in_threadpool(reconciler.handle_provider_event, payload, signature)
    return result.to_response()


@router.post("/webhook")
async def provider_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    session: Session = Depends(get_session)
) -> Dict[str, Any]:
    """Apply a signed payment provider event."""
    return await _handle(request, stripe_signature, session)


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    session: Session = Depends(get_session)
) -> Dict[str, Any]:
    """Path used by earlier app builds; same handling as /webhook."""
    return await _handle(request, stripe_signature, session)
