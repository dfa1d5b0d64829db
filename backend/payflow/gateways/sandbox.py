"""
Provider Sandbox

In-process stand-in for the Wise, Visa Direct and Apple Pay HTTP APIs,
served through ``httpx.MockTransport`` so the real adapters run unchanged in
demo mode and in tests.

Deterministic test scenarios:
- IBANs starting with ``XX`` are rejected when creating a recipient (422)
- Cards in ``DECLINE_PANS`` are declined with the listed action code
- Wallet tokens containing a ``DECLINE_TOKENS`` marker are declined
- ``OUTAGE_AMOUNT`` makes every money-moving call answer 503
- ``fail_next()`` injects one-off failures or timeouts per operation
- ``refund_status`` overrides the status every new refund is created with

Transfers are idempotent on the provider's idempotency field, so a retried
request returns the original transfer.
"""
import hashlib
import json
import logging
import re
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

DECLINE_PANS = {
    "4000000000000002": "05",  # do not honor
    "4000000000009995": "51",  # insufficient funds
}

DECLINE_TOKENS = {
    "tok_decline": "insufficient_funds",
    "tok_decline_fraud": "fraud_suspected",
    "tok_decline_expired": "card_expired",
}

OUTAGE_AMOUNT = Decimal("503.00")

Handler = Callable[[httpx.Request, Dict[str, Any], "re.Match[str]"], httpx.Response]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _short_id(seed: str) -> str:
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:12]


class ProviderSandbox:
    """
    Emulated provider APIs with in-memory state.

    One instance holds the state of every emulated provider; ``transport()``
    returns an ``httpx.MockTransport`` bound to it.
    """

    def __init__(self):
        self.calls: List[str] = []
        self._faults: Dict[str, List[Optional[int]]] = defaultdict(list)

        self.wise_transfers: Dict[str, Dict[str, Any]] = {}
        self._wise_by_customer_id: Dict[str, str] = {}
        self.visa_payments: Dict[str, Dict[str, Any]] = {}
        self.apple_payments: Dict[str, Dict[str, Any]] = {}
        self.refunds: Dict[str, Dict[str, Any]] = {}
        self.refund_status: Optional[str] = None

        self._routes: List[Tuple[str, "re.Pattern[str]", str, Handler]] = [
            ("POST", re.compile(r"^/v3/profiles/[^/]+/quotes$"), "wise.quote", self._wise_quote),
            ("POST", re.compile(r"^/v1/accounts$"), "wise.recipient", self._wise_account),
            ("POST", re.compile(r"^/v1/transfers$"), "wise.transfer", self._wise_transfer),
            ("POST", re.compile(r"^/v3/profiles/[^/]+/transfers/(?P<id>[^/]+)/payments$"), "wise.fund", self._wise_fund),
            ("POST", re.compile(r"^/v3/profiles/[^/]+/transfers/(?P<id>[^/]+)/refunds$"), "wise.refund", self._wise_refund),
            ("GET", re.compile(r"^/v1/transfers/(?P<id>[^/]+)$"), "wise.status", self._wise_status),
            ("POST", re.compile(r"^/visadirect/v1/pushpayments$"), "visa.push", self._visa_push),
            ("GET", re.compile(r"^/visadirect/v1/pushpayments/(?P<id>[^/]+)$"), "visa.status", self._visa_status),
            ("POST", re.compile(r"^/visadirect/v1/refunds$"), "visa.refund", self._visa_refund),
            ("POST", re.compile(r"^/paymentservices/(startSession|paymentSession)$"), "apple.session", self._apple_session),
            ("POST", re.compile(r"^/payments$"), "apple.authorize", self._apple_authorize),
            ("POST", re.compile(r"^/payments/(?P<id>[^/]+)/capture$"), "apple.capture", self._apple_capture),
            ("POST", re.compile(r"^/payments/(?P<id>[^/]+)/refunds$"), "apple.refund", self._apple_refund),
            ("GET", re.compile(r"^/payments/(?P<id>[^/]+)$"), "apple.status", self._apple_status),
        ]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def fail_next(self, operation: str, status_code: Optional[int] = 503, times: int = 1) -> None:
        """
        Make the next ``times`` calls to ``operation`` fail.

        Args:
            operation: Route name such as "wise.transfer" or "visa.push"
            status_code: HTTP status to answer with; None raises a timeout
            times: Number of consecutive calls affected
        """
        self._faults[operation].extend([status_code] * times)

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call == operation)

    # ========================================================================
    # Dispatch
    # ========================================================================

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        for method, pattern, operation, handler in self._routes:
            match = pattern.match(path)
            if request.method != method or match is None:
                continue

            self.calls.append(operation)
            if self._faults[operation]:
                status_code = self._faults[operation].pop(0)
                if status_code is None:
                    raise httpx.ReadTimeout("sandbox timeout", request=request)
                return httpx.Response(status_code, json={"message": "sandbox injected failure"})

            body = json.loads(request.content) if request.content else {}
            return handler(request, body, match)

        return httpx.Response(404, json={"message": f"no sandbox route for {request.method} {path}"})

    @staticmethod
    def _outage(amount: Any) -> bool:
        try:
            return Decimal(str(amount)) == OUTAGE_AMOUNT
        except ArithmeticError:
            return False

    # ========================================================================
    # Wise
    # ========================================================================

    def _wise_quote(self, request, body, match) -> httpx.Response:
        if self._outage(body.get("sourceAmount")):
            return httpx.Response(503, json={"message": "service unavailable"})
        rate = Decimal("1") if body["sourceCurrency"] == body["targetCurrency"] else Decimal("0.92")
        return httpx.Response(200, json={
            "id": str(uuid.uuid4()),
            "rate": float(rate),
            "sourceAmount": body["sourceAmount"],
            "expirationTime": (datetime.now(timezone.utc) + timedelta(minutes=30)).isoformat(),
        })

    def _wise_account(self, request, body, match) -> httpx.Response:
        iban = body.get("details", {}).get("iban", "")
        if iban.startswith("XX"):
            return httpx.Response(422, json={"errors": [{"code": "INVALID_IBAN", "message": "IBAN is not valid"}]})
        return httpx.Response(200, json={"id": int(_short_id(iban), 16) % 10**8})

    def _wise_transfer(self, request, body, match) -> httpx.Response:
        customer_id = body["customerTransactionId"]
        existing = self._wise_by_customer_id.get(customer_id)
        if existing is not None:
            return httpx.Response(200, json=self.wise_transfers[existing])

        transfer_id = str(int(_short_id(customer_id), 16) % 10**9)
        self.wise_transfers[transfer_id] = {
            "id": transfer_id,
            "status": "incoming_payment_waiting",
            "quoteUuid": body["quoteUuid"],
        }
        self._wise_by_customer_id[customer_id] = transfer_id
        return httpx.Response(200, json=self.wise_transfers[transfer_id])

    def _wise_fund(self, request, body, match) -> httpx.Response:
        transfer = self.wise_transfers.get(match.group("id"))
        if transfer is None:
            return httpx.Response(404, json={"message": "transfer not found"})
        if transfer.get("funded"):
            return httpx.Response(409, json={"message": "transfer already funded"})
        transfer["funded"] = True
        transfer["status"] = "outgoing_payment_sent"
        return httpx.Response(200, json={"type": "BALANCE", "status": "COMPLETED", "errorCode": None})

    def _wise_status(self, request, body, match) -> httpx.Response:
        transfer = self.wise_transfers.get(match.group("id"))
        if transfer is None:
            return httpx.Response(404, json={"message": "transfer not found"})
        return httpx.Response(200, json={"id": transfer["id"], "status": transfer["status"]})

    def _wise_refund(self, request, body, match) -> httpx.Response:
        if match.group("id") not in self.wise_transfers:
            return httpx.Response(404, json={"message": "transfer not found"})
        return self._record_refund(request.headers.get("X-Idempotence-Uuid"), body.get("refundAmount"), "COMPLETED")

    # ========================================================================
    # Visa Direct
    # ========================================================================

    def _visa_push(self, request, body, match) -> httpx.Response:
        if self._outage(body.get("amount")):
            return httpx.Response(503, json={"message": "service unavailable"})

        key = f"{body['systemsTraceAuditNumber']}:{body['retrievalReferenceNumber']}"
        transaction_id = str(int(_short_id(key), 16) % 10**15)
        payment = self.visa_payments.get(transaction_id)
        if payment is None:
            action_code = DECLINE_PANS.get(body.get("recipientPrimaryAccountNumber"), "00")
            payment = {
                "transactionIdentifier": transaction_id,
                "actionCode": action_code,
                "approvalCode": _short_id(key)[:6] if action_code == "00" else None,
                "transmissionDateTime": _now_iso(),
            }
            self.visa_payments[transaction_id] = payment
        return httpx.Response(200, json=payment)

    def _visa_status(self, request, body, match) -> httpx.Response:
        payment = self.visa_payments.get(match.group("id"))
        if payment is None:
            return httpx.Response(404, json={"message": "transaction not found"})
        return httpx.Response(200, json=payment)

    def _visa_refund(self, request, body, match) -> httpx.Response:
        if body.get("originalTransactionId") not in self.visa_payments:
            return httpx.Response(404, json={"message": "transaction not found"})
        key = f"visa:{body['systemsTraceAuditNumber']}:{body['retrievalReferenceNumber']}"
        response = self._record_refund(key, body.get("amount"), "00")
        refund = json.loads(response.content)
        return httpx.Response(200, json={"refundId": refund["id"], "actionCode": refund["status"]})

    # ========================================================================
    # Apple Pay
    # ========================================================================

    def _apple_session(self, request, body, match) -> httpx.Response:
        seed = f"{body.get('merchantIdentifier')}:{uuid.uuid4()}"
        return httpx.Response(200, json={
            "merchantSessionIdentifier": f"SSH{_short_id(seed).upper()}",
            "merchantIdentifier": body.get("merchantIdentifier"),
            "displayName": body.get("displayName"),
            "domainName": body.get("domainName"),
            "epochTimestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
            "expiresAt": int((datetime.now(timezone.utc) + timedelta(minutes=5)).timestamp() * 1000),
        })

    def _apple_authorize(self, request, body, match) -> httpx.Response:
        if self._outage(body.get("amount")):
            return httpx.Response(503, json={"message": "service unavailable"})

        key = request.headers.get("Idempotency-Key") or str(uuid.uuid4())
        payment_id = f"pay_{_short_id(key)}"
        payment = self.apple_payments.get(payment_id)
        if payment is None:
            marker = json.dumps(body.get("token"), sort_keys=True)
            declined = next((reason for token, reason in DECLINE_TOKENS.items() if f'"{token}"' in marker), None)
            payment = {
                "id": payment_id,
                "status": "declined" if declined else "authorized",
                "declineReason": declined,
                "amount": body.get("amount"),
                "currency": body.get("currency"),
            }
            self.apple_payments[payment_id] = payment
        return httpx.Response(200, json=payment)

    def _apple_capture(self, request, body, match) -> httpx.Response:
        payment = self.apple_payments.get(match.group("id"))
        if payment is None:
            return httpx.Response(404, json={"message": "payment not found"})
        if payment["status"] not in ("authorized", "captured"):
            return httpx.Response(400, json={"message": f"cannot capture a {payment['status']} payment"})
        payment["status"] = "captured"
        return httpx.Response(200, json=payment)

    def _apple_status(self, request, body, match) -> httpx.Response:
        payment = self.apple_payments.get(match.group("id"))
        if payment is None:
            return httpx.Response(404, json={"message": "payment not found"})
        return httpx.Response(200, json=payment)

    def _apple_refund(self, request, body, match) -> httpx.Response:
        if match.group("id") not in self.apple_payments:
            return httpx.Response(404, json={"message": "payment not found"})
        return self._record_refund(request.headers.get("Idempotency-Key"), body.get("amount"), "succeeded")

    # ========================================================================
    # Shared
    # ========================================================================

    def _record_refund(self, key: Optional[str], amount: Any, status: str) -> httpx.Response:
        key = key or str(uuid.uuid4())
        refund = self.refunds.get(key)
        if refund is None:
            refund = {
                "id": f"rf_{_short_id(key)}",
                "status": self.refund_status or status,
                "amount": amount,
                "created": _now_iso(),
            }
            self.refunds[key] = refund
        return httpx.Response(200, json=refund)
