"""
Refunds API Endpoints
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from ..models.auth import AuthenticatedUser
from ..models.transactions import RefundCreate
from ..services.orchestrator import PaymentOrchestrator
from .deps import get_orchestrator, rate_limited, require_roles

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/refunds",
    dependencies=[Depends(rate_limited("refunds:create"))],
)
async def create_refund_endpoint(
    body: RefundCreate,
    user: AuthenticatedUser = Depends(require_roles("refund:write")),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """
    Refund all or part of a completed payment.

    Returns:
        {"success": true, "refund": {...}}; 400 when the payment is not
        completed or the amount exceeds what is left to refund
    """
    result = await orchestrator.refund(body, requested_by=user.id)
    if not result.ok:
        raise result.error

    return {"success": True, "refund": result.value.to_public_dict()}


@router.get(
    "/refunds",
    dependencies=[Depends(rate_limited("refunds:read"))],
)
async def list_refunds_endpoint(
    payment_id: str = Query(..., alias="paymentId", min_length=1),
    user: AuthenticatedUser = Depends(require_roles("refund:read")),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Refunds of a payment, most recent first."""
    result = await orchestrator.list_refunds(payment_id)
    if not result.ok:
        raise result.error

    return {"success": True, "refunds": [refund.to_public_dict() for refund in result.value]}
