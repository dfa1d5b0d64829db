"""
Provider Webhook Endpoint

The body is read as raw bytes so the signature is checked against exactly
what the provider signed.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from ..services.webhook_reconciler import Rejected, WebhookReconciler
from .deps import get_reconciler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook/{provider}")
async def provider_webhook_endpoint(
    provider: str,
    request: Request,
    reconciler: WebhookReconciler = Depends(get_reconciler)
) -> Dict[str, Any]:
    """
    Receive a provider status event.

    Path Parameters:
        provider: wise, visa or apple-pay

    Returns:
        {"success": true} for applied, duplicate, stale and conflicting
        events; 401 bad signature, 400 malformed body, 404 unknown provider
    """
    raw_payload = await request.body()
    header_name = reconciler.signature_header_name(provider)
    signature = request.headers.get(header_name) if header_name else None

    result = await reconciler.handle(provider, raw_payload, signature)
    if isinstance(result, Rejected):
        raise result.error

    logger.info(f"{provider} webhook {result.outcome} for {result.transaction_id}")
    return {"success": True}
