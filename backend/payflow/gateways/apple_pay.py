"""
Apple Pay Gateway (wallet tokens)

Session validation -> authorize the encrypted token with the payment
processor -> capture. Merchant session validation posts to the
``validationURL`` handed to the browser by the payment sheet; only Apple
hosts are accepted there.
"""
import hashlib
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from ..exceptions import GatewayError
from ..models.gateway import (
    ExternalRef,
    ExternalRefund,
    ExternalStatus,
    ExternalTransfer,
    Quote,
    WebhookEvent,
)
from ..models.transactions import PaymentMethod, TransactionStatus as S
from .base import PaymentGateway, parse_timestamp, to_decimal

logger = logging.getLogger(__name__)


def is_apple_validation_url(url: str) -> bool:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    return parsed.scheme == "https" and (host == "apple.com" or host.endswith(".apple.com"))


class ApplePayGateway(PaymentGateway):
    """Wallet token payments through an Apple Pay payment processor."""

    name = "apple-pay"
    method = PaymentMethod.WALLET_TOKEN
    signature_header = "x-apple-pay-signature"

    STATUS_MAP = {
        "created": S.PENDING,
        "pending": S.PENDING,
        "authorized": S.PROCESSING,
        "processing": S.PROCESSING,
        "captured": S.COMPLETED,
        "succeeded": S.COMPLETED,
        "completed": S.COMPLETED,
        "declined": S.FAILED,
        "failed": S.FAILED,
        "canceled": S.FAILED,
        "refunded": S.REFUNDED,
    }

    REFUND_STATUS_MAP = {
        "pending": S.PROCESSING,
        "succeeded": S.COMPLETED,
        "completed": S.COMPLETED,
        "failed": S.FAILED,
    }

    def __init__(
        self,
        processor_url: str,
        merchant_id: str,
        webhook_secret: str,
        domain: Optional[str] = None,
        display_name: str = "Payflow Merchant",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **client_kwargs: Any
    ):
        super().__init__(
            processor_url,
            webhook_secret,
            timeout=timeout,
            transport=transport,
            **client_kwargs,
        )
        self.merchant_id = merchant_id
        self.domain = domain
        self.display_name = display_name

    async def create_recipient_or_session(self, details: Dict[str, Any]) -> ExternalRef:
        """
        Validate the merchant session when the payment sheet supplied a
        validation URL; otherwise wrap the already-authorized token.

        Args:
            details: ``paymentToken`` and optional ``validationUrl``

        Returns:
            ExternalRef of kind "session"; ``data["paymentToken"]`` carries
            the token to the authorize step
        """
        token = details.get("paymentToken")
        if not token:
            raise GatewayError("wallet payment requires a payment token", provider=self.name)

        validation_url = details.get("validationUrl")
        if not validation_url:
            fingerprint = hashlib.sha256(json.dumps(token, sort_keys=True).encode("utf-8")).hexdigest()
            return ExternalRef(id=f"token-{fingerprint[:16]}", kind="session", data={"paymentToken": token})

        if not is_apple_validation_url(validation_url):
            raise GatewayError(f"refusing merchant validation against {validation_url}", provider=self.name)

        session = await self._request("POST", validation_url, json={
            "merchantIdentifier": self.merchant_id,
            "displayName": self.display_name,
            "initiative": "web",
            "initiativeContext": self.domain,
            "domainName": self.domain,
        })
        session_id = session.get("merchantSessionIdentifier")
        if not session_id:
            raise GatewayError("merchant session validation returned no session", provider=self.name)

        logger.info(f"Apple Pay merchant session validated: {session_id}")
        return ExternalRef(id=str(session_id), kind="session", data={"paymentToken": token})

    async def execute_transfer(
        self,
        quote: Quote,
        recipient: ExternalRef,
        idempotency_key: str
    ) -> ExternalTransfer:
        """Authorize the token for the quoted amount without capturing."""
        body = await self._request(
            "POST",
            "/payments",
            json={
                "token": recipient.data["paymentToken"],
                "amount": str(quote.source_amount),
                "currency": quote.source_currency,
                "merchantIdentifier": self.merchant_id,
                "capture": False,
            },
            headers={"Idempotency-Key": idempotency_key},
        )
        payment_id = body.get("id") or body.get("transactionId")
        if not payment_id:
            raise GatewayError("processor response has no payment id", provider=self.name)

        raw_status = str(body.get("status", ""))
        return ExternalTransfer(id=str(payment_id), status=self.map_status(raw_status), raw_status=raw_status)

    async def fund(self, external_id: str) -> Optional[ExternalTransfer]:
        """Capture the authorized payment."""
        body = await self._request(
            "POST",
            f"/payments/{external_id}/capture",
            headers={"Idempotency-Key": f"capture-{external_id}"},
        )
        raw_status = str(body.get("status", ""))
        return ExternalTransfer(id=external_id, status=self.map_status(raw_status), raw_status=raw_status)

    async def get_status(self, external_id: str) -> ExternalStatus:
        body = await self._request("GET", f"/payments/{external_id}")
        raw_status = str(body.get("status", ""))
        return ExternalStatus(external_id=external_id, status=self.map_status(raw_status), raw_status=raw_status)

    async def refund(
        self,
        external_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        reason: str = ""
    ) -> ExternalRefund:
        body = await self._request(
            "POST",
            f"/payments/{external_id}/refunds",
            json={"amount": str(amount), "currency": currency, "reason": reason},
            headers={"Idempotency-Key": idempotency_key},
        )
        if not body.get("id"):
            raise GatewayError("processor refund response has no id", provider=self.name)

        raw_status = str(body.get("status", ""))
        status = self.REFUND_STATUS_MAP.get(raw_status.lower(), S.PROCESSING)
        return ExternalRefund(id=str(body["id"]), status=status, raw_status=raw_status)

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        if not isinstance(payload, dict):
            raise ValueError("apple pay event must be a JSON object")

        payment_id = payload.get("paymentId")
        raw_status = payload.get("status")
        if not payment_id or not raw_status:
            raise ValueError("apple pay event is missing paymentId or status")

        currency = payload.get("currency")
        return WebhookEvent(
            event_type=str(payload.get("type") or "payment.status"),
            external_ref=str(payment_id),
            new_status=self.map_status(raw_status),
            raw_status=str(raw_status),
            occurred_at=parse_timestamp(payload.get("occurredAt") or payload.get("created")),
            amount=to_decimal(payload.get("amount")),
            currency=str(currency).upper() if currency else None,
        )
