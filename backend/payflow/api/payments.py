"""
Payments API Endpoints

Create payments, read and poll their status, cancel undispatched ones and
read their audit trail.

Creation answers as soon as the pending record is stored; the gateway
sequence runs as a background task of the same request.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Response

from ..models.auth import AuthenticatedUser
from ..models.transactions import PaymentCreate
from ..services.orchestrator import PaymentInstrument, PaymentOrchestrator
from .deps import get_orchestrator, rate_limited, require_roles

logger = logging.getLogger(__name__)

router = APIRouter()


async def dispatch_payment(
    orchestrator: PaymentOrchestrator,
    transaction_id: str,
    instrument: PaymentInstrument
) -> None:
    result = await orchestrator.dispatch(transaction_id, instrument)
    if result.ok:
        logger.info(f"Dispatch of {transaction_id} finished with status {result.value.status.value}")
    else:
        logger.warning(f"Dispatch of {transaction_id} ended with {result.error.error_code}")


@router.post(
    "/payments",
    status_code=201,
    dependencies=[Depends(rate_limited("payments:create"))],
)
async def create_payment_endpoint(
    body: PaymentCreate,
    background_tasks: BackgroundTasks,
    response: Response,
    idempotency_key: Optional[str] = Header(default=None),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """
    Create a payment.

    Headers:
        Idempotency-Key: Optional; a repeated key returns the stored payment
            with 200 and does not dispatch again

    Returns:
        {"success": true, "payment": {"id", "status", "amount", "currency"}}

    Example:
        POST /payments
        {"amount": 25.00, "currency": "EUR", "customerEmail": "a@b.com",
         "customerName": "Ada", "method": "bank_transfer",
         "recipient": {"accountHolderName": "Ada", "iban": "DE89370400440532013000"}}
    """
    result = await orchestrator.create_payment(body, idempotency_key)
    if not result.ok:
        raise result.error

    created = result.value
    if created.instrument is not None:
        background_tasks.add_task(dispatch_payment, orchestrator, created.transaction.id, created.instrument)
    else:
        response.status_code = 200

    return {"success": True, "payment": created.transaction.summary()}


@router.get(
    "/payments/status",
    dependencies=[Depends(rate_limited("payments:read"))],
)
async def get_payment_status_endpoint(
    id: str = Query(..., min_length=1),
    refresh: bool = Query(default=False),
    user: AuthenticatedUser = Depends(require_roles("payment:read")),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """
    Get a payment.

    Query Parameters:
        id: Payment id
        refresh: Poll the provider before answering
    """
    if refresh:
        result = await orchestrator.refresh_status(id)
    else:
        result = await orchestrator.get_payment(id)
    if not result.ok:
        raise result.error

    return {"success": True, "payment": result.value.to_public_dict()}


@router.post("/payments/cancel")
async def cancel_payment_endpoint(
    id: str = Query(..., min_length=1),
    user: AuthenticatedUser = Depends(require_roles("payment:write")),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Cancel a payment that is still pending. 409 once dispatch has begun."""
    result = await orchestrator.cancel(id)
    if not result.ok:
        raise result.error

    logger.info(f"Payment {id} cancelled by {user.id}")
    return {"success": True, "payment": result.value.to_public_dict()}


@router.get(
    "/payments/logs",
    dependencies=[Depends(rate_limited("payments:read"))],
)
async def get_payment_logs_endpoint(
    id: str = Query(..., min_length=1),
    user: AuthenticatedUser = Depends(require_roles("payment:read")),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Status history of a payment, oldest first."""
    result = await orchestrator.list_events(id)
    if not result.ok:
        raise result.error

    return {"success": True, "events": [event.to_public_dict() for event in result.value]}
