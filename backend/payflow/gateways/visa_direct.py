"""
Visa Direct Gateway (card push payments)

Push funds straight to a card: there is no quote or recipient call, and a
push payment either settles on the spot (``actionCode`` "00") or is
declined. Requests carry Basic credentials plus an ``x-pay-token``:

    xv2:{timestamp}:{HMAC-SHA256(shared_secret, timestamp + path + query + body)}

Idempotency comes from the trace numbers (``systemsTraceAuditNumber`` and
``retrievalReferenceNumber``), which are derived from the idempotency key
so a retried push is recognized as the same request.
"""
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

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

PUSH_PAYMENTS_PATH = "/visadirect/v1/pushpayments"
REFUNDS_PATH = "/visadirect/v1/refunds"
APPROVED = "00"


def trace_numbers(idempotency_key: str) -> Tuple[str, str]:
    """Stable (systemsTraceAuditNumber, retrievalReferenceNumber) for a key."""
    digest = int(hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest(), 16)
    return f"{digest % 1_000_000:06d}", f"{digest % 10**12:012d}"


class VisaDirectGateway(PaymentGateway):
    """Card push payments through Visa Direct."""

    name = "visa"
    method = PaymentMethod.CARD_PUSH
    signature_header = "x-visa-signature"

    STATUS_MAP = {
        "success": S.COMPLETED,
        "approved": S.COMPLETED,
        "completed": S.COMPLETED,
        "pending": S.PROCESSING,
        "processing": S.PROCESSING,
        "declined": S.FAILED,
        "failed": S.FAILED,
        "reversed": S.REFUNDED,
        "refunded": S.REFUNDED,
    }

    def __init__(
        self,
        api_url: str,
        api_key: str,
        shared_secret: str,
        user_id: str,
        password: str,
        webhook_secret: str,
        merchant_id: Optional[str] = None,
        merchant_name: str = "Payflow Merchant",
        merchant_category_code: str = "4214",
        acquiring_bin: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **client_kwargs: Any
    ):
        super().__init__(
            api_url,
            webhook_secret,
            timeout=timeout,
            transport=transport,
            auth=(user_id, password),
            **client_kwargs,
        )
        self.api_key = api_key
        self._shared_secret = shared_secret
        self.merchant_id = merchant_id
        self.merchant_name = merchant_name
        self.merchant_category_code = merchant_category_code
        self.acquiring_bin = acquiring_bin

    # ========================================================================
    # Signed Requests
    # ========================================================================

    def x_pay_token(self, resource_path: str, query: str, body: str, timestamp: Optional[int] = None) -> str:
        ts = str(timestamp if timestamp is not None else int(time.time()))
        message = f"{ts}{resource_path.lstrip('/')}{query}{body}"
        digest = hmac.new(
            self._shared_secret.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return f"xv2:{ts}:{digest}"

    async def _signed_request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        body = json.dumps(payload, separators=(",", ":")) if payload is not None else ""
        query = f"apikey={self.api_key}"
        return await self._request(
            method,
            path,
            params={"apikey": self.api_key},
            content=body.encode("utf-8") if body else None,
            headers={"x-pay-token": self.x_pay_token(path, query, body)},
        )

    def _outcome(self, body: Dict[str, Any]) -> Tuple[S, str]:
        action_code = body.get("actionCode")
        if action_code is not None:
            action_code = str(action_code)
            return (S.COMPLETED if action_code == APPROVED else S.FAILED), f"actionCode:{action_code}"
        raw_status = str(body.get("status", ""))
        return self.map_status(raw_status), raw_status

    # ========================================================================
    # Operations
    # ========================================================================

    async def create_recipient_or_session(self, details: Dict[str, Any]) -> ExternalRef:
        """The receiving card is the recipient; nothing to register."""
        pan = str(details.get("recipientPrimaryAccountNumber") or "")
        if not pan:
            raise GatewayError("card push requires a recipient card number", provider=self.name)
        return ExternalRef(id=f"card-{pan[-4:]}", kind="recipient", data=dict(details))

    async def execute_transfer(
        self,
        quote: Quote,
        recipient: ExternalRef,
        idempotency_key: str
    ) -> ExternalTransfer:
        stan, rrn = trace_numbers(idempotency_key)
        payload = {
            "systemsTraceAuditNumber": stan,
            "retrievalReferenceNumber": rrn,
            "localTransactionDateTime": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S"),
            "acquiringBin": self.acquiring_bin,
            "acquirerCountryCode": "840",
            "recipientPrimaryAccountNumber": recipient.data["recipientPrimaryAccountNumber"],
            "recipientName": recipient.data.get("recipientName"),
            "cardExpiryDate": recipient.data.get("expiryDate"),
            "amount": str(quote.source_amount),
            "transactionCurrencyCode": quote.source_currency,
            "businessApplicationId": "AA",
            "merchantCategoryCode": self.merchant_category_code,
            "cardAcceptor": {
                "name": self.merchant_name,
                "idCode": self.merchant_id,
                "terminalId": "PAYFLOW1",
                "address": {"country": "USA"},
            },
        }
        body = await self._signed_request("POST", PUSH_PAYMENTS_PATH, payload)

        transaction_id = body.get("transactionIdentifier") or body.get("transactionId")
        if not transaction_id:
            raise GatewayError("visa push payment response has no transaction id", provider=self.name)

        status, raw_status = self._outcome(body)
        if status == S.FAILED:
            logger.warning(f"Visa push payment {transaction_id} declined ({raw_status})")
        return ExternalTransfer(id=str(transaction_id), status=status, raw_status=raw_status)

    async def get_status(self, external_id: str) -> ExternalStatus:
        body = await self._signed_request("GET", f"{PUSH_PAYMENTS_PATH}/{external_id}")
        status, raw_status = self._outcome(body)
        return ExternalStatus(external_id=external_id, status=status, raw_status=raw_status)

    async def refund(
        self,
        external_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        reason: str = ""
    ) -> ExternalRefund:
        stan, rrn = trace_numbers(idempotency_key)
        body = await self._signed_request("POST", REFUNDS_PATH, {
            "originalTransactionId": external_id,
            "systemsTraceAuditNumber": stan,
            "retrievalReferenceNumber": rrn,
            "amount": str(amount),
            "transactionCurrencyCode": currency,
            "reason": reason,
        })

        refund_id = body.get("refundId") or body.get("transactionIdentifier")
        if not refund_id:
            raise GatewayError("visa refund response has no id", provider=self.name)
        status, raw_status = self._outcome(body)
        if status == S.REFUNDED:
            status = S.COMPLETED
        return ExternalRefund(id=str(refund_id), status=status, raw_status=raw_status)

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        if not isinstance(payload, dict):
            raise ValueError("visa event must be a JSON object")

        transaction_id = payload.get("transactionId")
        raw_status = payload.get("status")
        if not transaction_id or not raw_status:
            raise ValueError("visa event is missing transactionId or status")

        currency = payload.get("currency")
        return WebhookEvent(
            event_type=str(payload.get("eventType") or "transaction.status"),
            external_ref=str(transaction_id),
            new_status=self.map_status(raw_status),
            raw_status=str(raw_status),
            occurred_at=parse_timestamp(payload.get("occurredAt") or payload.get("timestamp")),
            amount=to_decimal(payload.get("amount")),
            currency=str(currency).upper() if currency else None,
        )
