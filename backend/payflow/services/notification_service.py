"""
Notification Service

Payment and refund confirmation emails through the Postmark HTTP API.

Email is best-effort: a failed send is logged and never changes the outcome
of the payment that triggered it.
"""
import logging
from decimal import Decimal
from typing import Optional

import httpx

from ..models.transactions import Transaction

logger = logging.getLogger(__name__)


class NotificationService:
    """Sends transactional email; a no-op when disabled."""

    def __init__(
        self,
        enabled: bool,
        api_url: str,
        api_token: Optional[str],
        sender: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.enabled = enabled and bool(api_token)
        self.sender = sender
        self._client = httpx.AsyncClient(
            base_url=api_url,
            timeout=timeout,
            headers={
                "Accept": "application/json",
                "X-Postmark-Server-Token": api_token or "",
            },
            transport=transport,
        )
        if enabled and not api_token:
            logger.warning("Email enabled but no Postmark token configured; notifications disabled")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, to: str, subject: str, text_body: str) -> bool:
        if not self.enabled:
            logger.debug(f"Email disabled, skipping '{subject}' to {to}")
            return False

        try:
            response = await self._client.post("/email", json={
                "From": self.sender,
                "To": to,
                "Subject": subject,
                "TextBody": text_body,
                "MessageStream": "outbound",
            })
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to send '{subject}' to {to}: {e}")
            return False

        logger.info(f"Sent '{subject}' to {to}")
        return True

    async def send_payment_confirmation(self, payment: Transaction) -> bool:
        if not payment.customer or not payment.customer.email:
            return False
        text = (
            f"Hi {payment.customer.name or 'there'},\n\n"
            f"Your payment of {_money(payment.amount)} {payment.currency} has been completed.\n"
            f"Reference: {payment.id}\n"
        )
        return await self._send(payment.customer.email, f"Payment confirmation {payment.id}", text)

    async def send_refund_confirmation(self, refund: Transaction, payment: Transaction) -> bool:
        if not payment.customer or not payment.customer.email:
            return False
        text = (
            f"Hi {payment.customer.name or 'there'},\n\n"
            f"A refund of {_money(refund.amount)} {refund.currency} for payment {payment.id} "
            f"has been issued.\nReason: {refund.reason}\n"
        )
        return await self._send(payment.customer.email, f"Refund issued for {payment.id}", text)


def _money(amount: Optional[Decimal]) -> str:
    return f"{amount:.2f}" if amount is not None else "-"
