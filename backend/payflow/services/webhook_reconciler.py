"""
Webhook Reconciler

Applies provider status events to local transactions.

Steps:
1. Verify the HMAC signature over the raw body (reject with 401)
2. Parse the provider event (reject with 400 when malformed)
3. Find the transaction by provider reference, creating a pending
   placeholder when the event beat the dispatch path to the store
4. Apply the reconciliation rules: completed is sticky, stale events are
   dropped, and unknown statuses never complete anything
5. A refund that completes here updates its payment's refunded total

Everything except signature and parse failures is acknowledged, so the
provider stops redelivering events that were already handled.
"""
import json
import logging
from dataclasses import dataclass
from typing import Optional, Union

from ..exceptions import (
    NotFoundError,
    PaymentError,
    PersistenceError,
    ReconciliationConflict,
    SignatureError,
    ValidationError,
)
from ..gateways.registry import GatewayRegistry
from ..models.gateway import WebhookEvent
from ..models.transactions import (
    PaymentMethod,
    Transaction,
    TransactionKind,
    TransactionStatus as S,
    utcnow,
)
from .notification_service import NotificationService
from .signature_service import verify_signature
from .state_machine import apply_refund_to_parent, apply_transition, can_reconcile, is_stale
from .transaction_store import TransactionStore, new_transaction_id

logger = logging.getLogger(__name__)


@dataclass
class Ack:
    """
    Event accepted. ``outcome`` is one of applied, duplicate, stale,
    conflict or ignored.
    """
    outcome: str
    transaction_id: Optional[str] = None


@dataclass
class Rejected:
    error: PaymentError

    @property
    def status_code(self) -> int:
        return self.error.status_code


WebhookResult = Union[Ack, Rejected]


class WebhookReconciler:
    """Verifies and applies provider webhooks."""

    def __init__(
        self,
        store: TransactionStore,
        gateways: GatewayRegistry,
        notifications: Optional[NotificationService] = None
    ):
        self.store = store
        self.gateways = gateways
        self.notifications = notifications

    def signature_header_name(self, provider: str) -> Optional[str]:
        gateway = self.gateways.for_provider(provider)
        return gateway.signature_header if gateway else None

    async def handle(
        self,
        provider: str,
        raw_payload: bytes,
        signature_header: Optional[str]
    ) -> WebhookResult:
        """
        Verify, parse and apply one webhook delivery.

        Args:
            provider: Path segment naming the provider (wise, visa, apple-pay)
            raw_payload: Request body exactly as received
            signature_header: Value of the provider's signature header

        Returns:
            Ack, or Rejected carrying the error for the HTTP status
        """
        gateway = self.gateways.for_provider(provider)
        if gateway is None:
            return Rejected(NotFoundError("Unknown webhook provider", {"provider": provider}))

        if not verify_signature(
            raw_payload,
            signature_header,
            gateway.webhook_secret,
            gateway.signature_algorithm,
            gateway.signature_encoding,
        ):
            logger.warning(f"Rejected {provider} webhook: invalid or missing signature")
            return Rejected(SignatureError())

        try:
            event = gateway.parse_webhook(json.loads(raw_payload))
        except ValueError as e:
            logger.warning(f"Rejected {provider} webhook: {e}")
            return Rejected(ValidationError("Malformed webhook payload"))

        if event.external_ref is None:
            logger.info(f"Ignoring {provider} event {event.event_type!r}")
            return Ack("ignored")

        try:
            return await self._apply(provider, gateway.method, event)
        except PersistenceError as e:
            return Rejected(e)

    async def _apply(self, provider: str, method: PaymentMethod, event: WebhookEvent) -> Ack:
        current = await self.store.get_by_provider_ref(event.external_ref)
        if current is None:
            current = await self._create_placeholder(provider, method, event)

        if current.status == event.new_status:
            return Ack("duplicate", current.id)
        if is_stale(current, event.occurred_at):
            logger.info(
                f"Stale {provider} event for {current.id}: {event.occurred_at.isoformat()} "
                f"< {current.last_event_at.isoformat()}"
            )
            return Ack("stale", current.id)
        if not can_reconcile(current.status, event.new_status):
            conflict = ReconciliationConflict(
                f"{provider} reported {event.raw_status} for {current.id} in {current.status.value}",
                {"transaction_id": current.id, "provider_status": event.raw_status},
            )
            logger.warning(f"Reconciliation conflict: {conflict.message}")
            return Ack("conflict", current.id)

        previous = current.status
        updated = await apply_transition(
            self.store, current, event.new_status,
            rules=can_reconcile,
            occurred_at=event.occurred_at,
            source="webhook",
            detail=f"{provider} {event.event_type}: {event.raw_status}",
        )
        if updated.status != event.new_status:
            return Ack("conflict", updated.id)

        if updated.status == S.COMPLETED and previous != S.COMPLETED and not updated.is_placeholder:
            await self._on_completed(updated)
        return Ack("applied", updated.id)

    async def _on_completed(self, transaction: Transaction) -> None:
        if transaction.kind == TransactionKind.REFUND:
            parent = await apply_refund_to_parent(self.store, transaction)
            if parent is not None:
                logger.info(
                    f"Refund {transaction.id} settled; {parent.id} refunded {parent.refunded_amount} of {parent.amount}"
                )
                if self.notifications is not None:
                    await self.notifications.send_refund_confirmation(transaction, parent)
        elif self.notifications is not None:
            await self.notifications.send_payment_confirmation(transaction)

    async def _create_placeholder(self, provider: str, method: PaymentMethod, event: WebhookEvent) -> Transaction:
        """Pending stand-in for an event whose transaction is not stored yet."""
        now = utcnow()
        placeholder, created = await self.store.create(Transaction(
            id=new_transaction_id("whk"),
            kind=TransactionKind.TRANSFER if method == PaymentMethod.BANK_TRANSFER else TransactionKind.PAYMENT,
            status=S.PENDING,
            amount=event.amount,
            currency=event.currency,
            method=method,
            metadata={"placeholder": True, "provider": provider},
            provider_ref=event.external_ref,
            created_at=now,
            updated_at=now,
        ), source="webhook")
        if created:
            logger.warning(f"No transaction for {provider} ref {event.external_ref}; created placeholder {placeholder.id}")
        return placeholder
