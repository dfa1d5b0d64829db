"""
Wise Gateway (bank transfers)

Four-step payout: quote -> recipient account -> transfer -> fund from the
business balance. After funding, Wise moves the transfer through its own
states and reports the outcome with ``transfers#state-change`` webhooks.

Wise requires ``customerTransactionId`` to be a UUID, so the caller's
idempotency key is mapped onto a stable UUIDv5.
"""
import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

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

STATE_CHANGE_EVENTS = frozenset({"transfers#state-change", "transfer.state-change"})


def wise_uuid(idempotency_key: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"payflow:{idempotency_key}"))


class WiseGateway(PaymentGateway):
    """Bank transfers through the Wise Platform API."""

    name = "wise"
    method = PaymentMethod.BANK_TRANSFER
    signature_header = "x-wise-signature"
    signature_encoding = "base64"

    STATUS_MAP = {
        "incoming_payment_waiting": S.PROCESSING,
        "incoming_payment_initiated": S.PROCESSING,
        "processing": S.PROCESSING,
        "funds_converted": S.PROCESSING,
        "outgoing_payment_sent": S.COMPLETED,
        "cancelled": S.FAILED,
        "bounced_back": S.FAILED,
        "charged_back": S.FAILED,
        "failed": S.FAILED,
        "funds_refunded": S.REFUNDED,
    }

    REFUND_STATUS_MAP = {
        "pending": S.PROCESSING,
        "processing": S.PROCESSING,
        "completed": S.COMPLETED,
        "rejected": S.FAILED,
        "failed": S.FAILED,
    }

    def __init__(
        self,
        api_url: str,
        api_key: str,
        profile_id: str,
        webhook_secret: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(
            api_url,
            webhook_secret,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )
        self.profile_id = profile_id

    async def create_quote(
        self,
        amount: Decimal,
        source_currency: str,
        target_currency: str
    ) -> Quote:
        body = await self._request(
            "POST",
            f"/v3/profiles/{self.profile_id}/quotes",
            json={
                "sourceCurrency": source_currency,
                "targetCurrency": target_currency,
                "sourceAmount": float(amount),
            },
        )
        if not body.get("id"):
            raise GatewayError("wise quote response has no id", provider=self.name)

        return Quote(
            id=str(body["id"]),
            rate=to_decimal(body.get("rate")) or Decimal("1"),
            source_amount=amount,
            source_currency=source_currency,
            target_currency=target_currency,
            expires_at=parse_timestamp(body.get("expirationTime")) if body.get("expirationTime") else None,
        )

    async def create_recipient_or_session(self, details: Dict[str, Any]) -> ExternalRef:
        """
        Create the IBAN recipient account.

        Args:
            details: ``accountHolderName``, ``iban``, ``currency`` and an
                optional transfer ``reference``
        """
        if not details.get("iban"):
            raise GatewayError("bank transfer requires a recipient IBAN", provider=self.name)

        reference = details.get("reference")
        body = await self._request(
            "POST",
            "/v1/accounts",
            json={
                "currency": details["currency"],
                "type": "iban",
                "profile": self.profile_id,
                "accountHolderName": details["accountHolderName"],
                "details": {"legalType": "PRIVATE", "iban": details["iban"]},
            },
        )
        if not body.get("id"):
            raise GatewayError("wise account response has no id", provider=self.name)
        return ExternalRef(id=str(body["id"]), kind="recipient", data={"reference": reference})

    async def execute_transfer(
        self,
        quote: Quote,
        recipient: ExternalRef,
        idempotency_key: str
    ) -> ExternalTransfer:
        reference = (recipient.data.get("reference") or "Payment")[:35]
        body = await self._request(
            "POST",
            "/v1/transfers",
            json={
                "targetAccount": recipient.id,
                "quoteUuid": quote.id,
                "customerTransactionId": wise_uuid(idempotency_key),
                "details": {
                    "reference": reference,
                    "transferPurpose": "verification.transfers.purpose.pay.bills",
                    "sourceOfFunds": "verification.source.of.funds.other",
                },
            },
        )
        if not body.get("id"):
            raise GatewayError("wise transfer response has no id", provider=self.name)

        raw_status = str(body.get("status", ""))
        return ExternalTransfer(id=str(body["id"]), status=self.map_status(raw_status), raw_status=raw_status)

    async def fund(self, external_id: str) -> Optional[ExternalTransfer]:
        """Pay the transfer from the profile's balance."""
        body = await self._request(
            "POST",
            f"/v3/profiles/{self.profile_id}/transfers/{external_id}/payments",
            json={"type": "BALANCE"},
        )
        if str(body.get("status", "")).upper() != "COMPLETED":
            raise GatewayError(
                f"wise funding rejected: {body.get('errorCode') or body.get('status')}",
                provider=self.name,
            )
        # Outcome arrives later as a state-change event
        return ExternalTransfer(id=external_id, status=S.PROCESSING, raw_status="funded")

    async def get_status(self, external_id: str) -> ExternalStatus:
        body = await self._request("GET", f"/v1/transfers/{external_id}")
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
            f"/v3/profiles/{self.profile_id}/transfers/{external_id}/refunds",
            json={"refundAmount": float(amount), "currency": currency, "reason": reason},
            headers={"X-Idempotence-Uuid": wise_uuid(idempotency_key)},
        )
        if not body.get("id"):
            raise GatewayError("wise refund response has no id", provider=self.name)

        raw_status = str(body.get("status", ""))
        status = self.REFUND_STATUS_MAP.get(raw_status.lower(), S.PROCESSING)
        return ExternalRefund(id=str(body["id"]), status=status, raw_status=raw_status)

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        if not isinstance(payload, dict):
            raise ValueError("wise event must be a JSON object")

        event_type = str(payload.get("event_type", ""))
        if event_type not in STATE_CHANGE_EVENTS:
            return WebhookEvent(
                event_type=event_type,
                external_ref=None,
                new_status=S.PENDING,
                raw_status="",
                occurred_at=parse_timestamp(payload.get("sent_at")),
            )

        data = payload.get("data")
        if not isinstance(data, dict):
            raise ValueError("wise event has no data object")
        resource = data.get("resource") or {}
        resource_id = resource.get("id") if isinstance(resource, dict) else None
        current_state = data.get("current_state")
        if resource_id is None or not current_state:
            raise ValueError("wise event is missing resource.id or current_state")

        return WebhookEvent(
            event_type=event_type,
            external_ref=str(resource_id),
            new_status=self.map_status(current_state),
            raw_status=str(current_state),
            occurred_at=parse_timestamp(data.get("occurred_at") or payload.get("sent_at")),
        )
