"""
Payment Gateway Adapter Interface

Every provider (bank transfers, card push payments, wallet tokens) is driven
through the same five-step shape:

    create_quote -> create_recipient_or_session -> execute_transfer -> fund

plus ``get_status`` and ``refund``. Providers that lack a step implement it
locally without a network call. Each adapter maps its own status vocabulary
onto ``TransactionStatus``; unknown strings map to ``pending``.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
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
from ..models.transactions import PaymentMethod, TransactionStatus, utcnow

logger = logging.getLogger(__name__)


def parse_timestamp(value: Any) -> datetime:
    """Parse a provider ISO-8601 timestamp into naive UTC; fall back to now."""
    if not value:
        return utcnow()
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return utcnow()
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return None


class PaymentGateway(ABC):
    """
    Base class for provider adapters.

    Subclasses set the class attributes describing their webhook signature
    scheme and fill ``STATUS_MAP`` with their status vocabulary.
    """

    name: str = ""
    method: PaymentMethod
    signature_header: str = ""
    signature_algorithm: str = "sha256"
    signature_encoding: str = "hex"
    STATUS_MAP: Dict[str, TransactionStatus] = {}

    def __init__(
        self,
        base_url: str,
        webhook_secret: str,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **client_kwargs: Any
    ):
        self.webhook_secret = webhook_secret
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            headers={"Content-Type": "application/json", **(headers or {})},
            transport=transport,
            **client_kwargs,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ========================================================================
    # HTTP
    # ========================================================================

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Call the provider and return the decoded JSON body.

        Raises:
            GatewayError: retryable for timeouts, transport errors, 429 and
                5xx; terminal for other 4xx and undecodable bodies
        """
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayError(
                f"{self.name} timed out on {method} {path}",
                retryable=True,
                provider=self.name,
            ) from e
        except httpx.TransportError as e:
            raise GatewayError(
                f"{self.name} network error on {method} {path}: {e}",
                retryable=True,
                provider=self.name,
            ) from e

        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code == 429
            raise GatewayError(
                f"{self.name} HTTP {response.status_code} on {method} {path}: {self._error_text(response)}",
                retryable=retryable,
                provider=self.name,
                details={"status_code": response.status_code},
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(
                f"{self.name} returned a non-JSON body on {method} {path}",
                provider=self.name,
            ) from e

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            if body.get("message"):
                return str(body["message"])
            errors = body.get("errors")
            if isinstance(errors, list) and errors:
                first = errors[0]
                return str(first.get("message") or first.get("code") if isinstance(first, dict) else first)
        return str(body)[:200]

    # ========================================================================
    # Status Mapping
    # ========================================================================

    def map_status(self, raw_status: Optional[str]) -> TransactionStatus:
        status = self.STATUS_MAP.get(str(raw_status or "").lower())
        if status is None:
            logger.warning(f"{self.name}: unmapped provider status {raw_status!r}, treating as pending")
            return TransactionStatus.PENDING
        return status

    # ========================================================================
    # Operations
    # ========================================================================

    async def create_quote(
        self,
        amount: Decimal,
        source_currency: str,
        target_currency: str
    ) -> Quote:
        """
        Price the payment. The default is a local 1:1 quote for providers
        that settle in the charged currency.
        """
        if source_currency != target_currency:
            raise GatewayError(
                f"{self.name} cannot convert {source_currency} to {target_currency}",
                provider=self.name,
            )
        return Quote(
            id=f"local-{source_currency}-{amount}",
            rate=Decimal("1"),
            source_amount=amount,
            source_currency=source_currency,
            target_currency=target_currency,
            expires_at=utcnow() + timedelta(minutes=30),
        )

    @abstractmethod
    async def create_recipient_or_session(self, details: Dict[str, Any]) -> ExternalRef:
        """Register the receiving account or open a payment session."""

    @abstractmethod
    async def execute_transfer(
        self,
        quote: Quote,
        recipient: ExternalRef,
        idempotency_key: str
    ) -> ExternalTransfer:
        """Move the money. Must be idempotent on ``idempotency_key``."""

    async def fund(self, external_id: str) -> Optional[ExternalTransfer]:
        """Fund or capture an executed transfer. No-op by default."""
        return None

    @abstractmethod
    async def get_status(self, external_id: str) -> ExternalStatus:
        """Poll the provider for the current status."""

    @abstractmethod
    async def refund(
        self,
        external_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        reason: str = ""
    ) -> ExternalRefund:
        """Return money for a completed transfer. Idempotent on the key."""

    @abstractmethod
    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        """
        Normalize a decoded webhook body.

        Raises:
            ValueError: If the payload does not have the provider's shape
        """
