"""
Payment Orchestrator

Owns the lifecycle of payments, transfers and refunds:

    create (pending) -> dispatch (processing) -> resolve (completed | failed)
    completed -> refund(s) -> refunded once fully refunded

Flow:
1. ``create_payment`` validates the request and persists a pending record.
   A repeated idempotency key returns the existing record.
2. ``dispatch`` records processing, then runs the gateway sequence
   quote -> recipient/session -> execute -> fund, saving the provider id as
   soon as one is returned.
3. Retries happen only here, only for retryable gateway errors of
   idempotent steps, with bounded exponential backoff.

Card numbers, IBANs and wallet tokens travel in a ``PaymentInstrument`` held
in memory for the dispatch only; they are never written to the store.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..exceptions import (
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from ..gateways.base import PaymentGateway
from ..gateways.registry import GatewayRegistry
from ..models.results import Err, Ok, Result
from ..models.transactions import (
    Customer,
    PaymentCreate,
    PaymentMethod,
    RecipientDetails,
    RefundCreate,
    Transaction,
    TransactionEvent,
    TransactionKind,
    TransactionStatus as S,
    utcnow,
)
from .notification_service import NotificationService
from .state_machine import apply_refund_to_parent, apply_transition, can_reconcile
from .transaction_store import TransactionStore, new_transaction_id

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PaymentInstrument:
    """Method-specific details for one dispatch. Never persisted."""
    method: PaymentMethod
    details: Dict[str, Any] = field(repr=False)
    target_currency: str


@dataclass
class CreatedPayment:
    transaction: Transaction
    created: bool
    instrument: Optional[PaymentInstrument] = None


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


class PaymentOrchestrator:
    """Single orchestrator for every payment method."""

    def __init__(
        self,
        store: TransactionStore,
        gateways: GatewayRegistry,
        notifications: Optional[NotificationService] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 5.0,
        default_recipient: Optional[RecipientDetails] = None
    ):
        self.store = store
        self.gateways = gateways
        self.notifications = notifications
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        # Merchant payout account for bank transfers that name no recipient
        self.default_recipient = default_recipient

    # ========================================================================
    # Retry Helper
    # ========================================================================

    async def _call(self, step: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run an idempotent gateway step, retrying retryable failures."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_max_seconds),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            return await retrying(fn, *args, **kwargs)
        except GatewayError as e:
            logger.warning(f"Gateway step {step} failed: {e.message} (retryable={e.retryable})")
            raise

    # ========================================================================
    # Create
    # ========================================================================

    def _validate(self, data: PaymentCreate) -> List[Dict[str, str]]:
        errors: List[Dict[str, str]] = []

        if self.gateways.for_method(data.method) is None:
            errors.append({"field": "method", "message": f"Payment method {data.method.value} is not available"})

        required = {
            PaymentMethod.BANK_TRANSFER: ("recipient", data.recipient or self.default_recipient),
            PaymentMethod.CARD_PUSH: ("card", data.card),
            PaymentMethod.WALLET_TOKEN: ("wallet", data.wallet),
        }
        name, value = required[data.method]
        if value is None:
            errors.append({"field": name, "message": f"Required for {data.method.value} payments"})

        if (
            data.method != PaymentMethod.BANK_TRANSFER
            and data.target_currency
            and data.target_currency != data.currency
        ):
            errors.append({
                "field": "targetCurrency",
                "message": "Currency conversion is only available for bank transfers",
            })

        if data.method == PaymentMethod.WALLET_TOKEN and data.wallet is not None and not data.wallet.payment_token:
            errors.append({"field": "wallet.paymentToken", "message": "Payment token must not be empty"})

        return errors

    def _instrument(self, data: PaymentCreate) -> PaymentInstrument:
        if data.method == PaymentMethod.BANK_TRANSFER:
            recipient = data.recipient or self.default_recipient
            target = data.target_currency or recipient.currency or data.currency
            details = {
                "accountHolderName": recipient.account_holder_name,
                "iban": recipient.iban,
                "currency": target,
                "reference": data.description,
            }
        elif data.method == PaymentMethod.CARD_PUSH:
            target = data.currency
            details = {
                "recipientPrimaryAccountNumber": data.card.recipient_primary_account_number,
                "expiryDate": data.card.expiry_date,
                "recipientName": data.card.recipient_name or data.customer_name,
            }
        else:
            target = data.currency
            details = {
                "paymentToken": data.wallet.payment_token,
                "validationUrl": data.wallet.validation_url,
            }
        return PaymentInstrument(method=data.method, details=details, target_currency=target)

    async def create_payment(
        self,
        data: PaymentCreate,
        idempotency_key: Optional[str] = None
    ) -> Result[CreatedPayment]:
        """
        Validate and persist a new pending payment.

        Args:
            data: Parsed request body
            idempotency_key: ``Idempotency-Key`` header; falls back to the
                body's ``idempotencyKey``

        Returns:
            Ok(CreatedPayment) with ``created=False`` and no instrument when
            the key was already used, or Err(ValidationError | PersistenceError)
        """
        errors = self._validate(data)
        if errors:
            logger.info(f"Rejected payment request: {[e['field'] for e in errors]}")
            return Err(ValidationError("Invalid payment request", errors))

        key = idempotency_key or data.idempotency_key
        try:
            if key:
                existing = await self.store.get_by_idempotency_key(key)
                if existing is not None:
                    logger.info(f"Idempotent replay of {existing.id} for key {key}")
                    return Ok(CreatedPayment(transaction=existing, created=False))

            now = utcnow()
            metadata = dict(data.metadata)
            if data.description:
                metadata["description"] = data.description
            instrument = self._instrument(data)
            if instrument.target_currency != data.currency:
                metadata["targetCurrency"] = instrument.target_currency

            transaction, created = await self.store.create(Transaction(
                id=new_transaction_id("txn"),
                kind=TransactionKind.TRANSFER if data.method == PaymentMethod.BANK_TRANSFER else TransactionKind.PAYMENT,
                status=S.PENDING,
                amount=data.amount,
                currency=data.currency,
                method=data.method,
                customer=Customer(email=data.customer_email, name=data.customer_name),
                metadata=metadata,
                idempotency_key=key,
                created_at=now,
                updated_at=now,
            ))
        except PersistenceError as e:
            return Err(e)

        return Ok(CreatedPayment(
            transaction=transaction,
            created=created,
            instrument=instrument if created else None,
        ))

    # ========================================================================
    # Dispatch
    # ========================================================================

    async def dispatch(self, transaction_id: str, instrument: PaymentInstrument) -> Result[Transaction]:
        """
        Run the gateway sequence for a pending payment.

        Declines are an expected outcome and come back as Ok with a failed
        transaction. Gateway errors mark the transaction failed and come
        back as Err.
        """
        try:
            current = await self.store.get(transaction_id)
            if current is None:
                return Err(NotFoundError("Payment not found", {"id": transaction_id}))

            gateway = self.gateways.for_method(current.method)
            if gateway is None:
                return Err(ValidationError(
                    "Payment method is not available",
                    [{"field": "method", "message": f"{current.method} is not configured"}],
                ))

            current = await apply_transition(
                self.store, current, S.PROCESSING,
                source="orchestrator", detail=f"dispatch via {gateway.name}",
            )
            if current.status != S.PROCESSING:
                logger.info(f"Skipping dispatch of {transaction_id}: status is {current.status.value}")
                return Ok(current)

            try:
                return Ok(await self._run_sequence(current, gateway, instrument))
            except GatewayError as e:
                logger.warning(f"Dispatch of {transaction_id} failed at {gateway.name}: {e.message}")
                latest = await self.store.get(transaction_id) or current
                await apply_transition(
                    self.store, latest, S.FAILED,
                    metadata_updates={"errorMessage": e.message},
                    source="orchestrator", detail="gateway error",
                )
                return Err(e)
        except PersistenceError as e:
            logger.error(f"Dispatch of {transaction_id} aborted: {e.message}")
            return Err(e)

    async def _run_sequence(
        self,
        current: Transaction,
        gateway: PaymentGateway,
        instrument: PaymentInstrument
    ) -> Transaction:
        quote = await self._call(
            "quote", gateway.create_quote,
            current.amount, current.currency, instrument.target_currency,
        )
        current = await self._save_metadata(current, {
            "provider": gateway.name,
            "quoteId": quote.id,
            "rate": str(quote.rate),
        })
        recipient = await self._call("recipient", gateway.create_recipient_or_session, instrument.details)
        current = await self._save_metadata(current, {f"{recipient.kind}Id": recipient.id})
        transfer = await self._call(
            "transfer", gateway.execute_transfer,
            quote, recipient, current.idempotency_key or current.id,
        )

        current = await self._record_provider_ref(current, transfer.id, {"transferId": transfer.id})

        outcome = transfer
        if outcome.status != S.FAILED and current.status == S.PROCESSING:
            # Funding is not safe to repeat, so it is never retried
            funded = await gateway.fund(transfer.id)
            if funded is not None:
                outcome = funded

        return await self._resolve(current, outcome.status, outcome.raw_status, gateway.name)

    async def _save_metadata(self, current: Transaction, updates: Dict[str, Any]) -> Transaction:
        """Merge provider ids into metadata before the next gateway step."""
        for _ in range(3):
            updated = await self.store.compare_and_set(current, metadata={**current.metadata, **updates})
            if updated is not None:
                return updated
            current = await self.store.get(current.id) or current
        raise PersistenceError("Could not record provider identifiers")

    async def _record_provider_ref(
        self,
        current: Transaction,
        provider_ref: str,
        metadata_updates: Dict[str, Any]
    ) -> Transaction:
        """Save the provider id and fold in any webhook placeholder for it."""
        for _ in range(3):
            metadata = {**current.metadata, **metadata_updates}
            updated, placeholder = await self.store.attach_provider_ref(current, provider_ref, metadata)
            if updated is not None:
                break
            current = await self.store.get(current.id) or current
        else:
            raise PersistenceError("Could not record provider reference")

        if placeholder is not None and placeholder.status != S.PENDING:
            logger.info(
                f"Applying early {placeholder.status.value} event for {provider_ref} to {updated.id}"
            )
            updated = await apply_transition(
                self.store, updated, placeholder.status,
                rules=can_reconcile,
                occurred_at=placeholder.last_event_at,
                source="webhook", detail="merged early webhook",
            )
        return updated

    async def _resolve(self, current: Transaction, status: S, raw_status: str, provider: str) -> Transaction:
        if status == S.COMPLETED:
            resolved = await apply_transition(
                self.store, current, S.COMPLETED,
                metadata_updates={"providerStatus": raw_status},
                source="orchestrator", detail=f"{provider}: {raw_status}",
            )
            if resolved.status == S.COMPLETED and current.status != S.COMPLETED:
                await self._notify_payment(resolved)
            return resolved

        if status == S.FAILED:
            logger.warning(f"{provider} declined {current.id} ({raw_status})")
            return await apply_transition(
                self.store, current, S.FAILED,
                metadata_updates={
                    "providerStatus": raw_status,
                    "errorMessage": f"Declined by {provider}: {raw_status}",
                },
                source="orchestrator", detail=f"{provider}: {raw_status}",
            )

        # Provider still working; a webhook or status poll finishes it
        logger.info(f"{current.id} awaiting {provider} ({raw_status})")
        return current

    async def _notify_payment(self, payment: Transaction) -> None:
        if self.notifications is not None:
            await self.notifications.send_payment_confirmation(payment)

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_payment(self, transaction_id: str) -> Result[Transaction]:
        try:
            transaction = await self.store.get(transaction_id)
        except PersistenceError as e:
            return Err(e)
        if transaction is None:
            return Err(NotFoundError("Payment not found", {"id": transaction_id}))
        return Ok(transaction)

    async def refresh_status(self, transaction_id: str) -> Result[Transaction]:
        """
        Poll the provider and apply its status through the reconciliation
        rules. A failed poll leaves the transaction as it was.
        """
        result = await self.get_payment(transaction_id)
        if not result.ok:
            return result
        current = result.value
        if current.is_terminal or not current.provider_ref or current.method is None:
            return result
        if current.kind == TransactionKind.REFUND:
            # Providers report refund progress by webhook only
            return result

        gateway = self.gateways.for_method(current.method)
        if gateway is None:
            return result

        try:
            external = await self._call("status", gateway.get_status, current.provider_ref)
        except GatewayError as e:
            logger.warning(f"Status poll for {transaction_id} failed: {e.message}")
            return result

        try:
            updated = await apply_transition(
                self.store, current, external.status,
                rules=can_reconcile,
                source="poll", detail=f"{gateway.name}: {external.raw_status}",
            )
        except PersistenceError as e:
            return Err(e)

        if updated.status == S.COMPLETED and current.status != S.COMPLETED:
            await self._notify_payment(updated)
        return Ok(updated)

    async def list_events(self, transaction_id: str) -> Result[List[TransactionEvent]]:
        result = await self.get_payment(transaction_id)
        if not result.ok:
            return result
        try:
            return Ok(await self.store.list_events(transaction_id))
        except PersistenceError as e:
            return Err(e)

    async def list_refunds(self, payment_id: str) -> Result[List[Transaction]]:
        result = await self.get_payment(payment_id)
        if not result.ok:
            return result
        try:
            return Ok(await self.store.list_refunds(payment_id))
        except PersistenceError as e:
            return Err(e)

    # ========================================================================
    # Cancel
    # ========================================================================

    async def cancel(self, transaction_id: str) -> Result[Transaction]:
        """Cancel a payment that has not been dispatched yet."""
        result = await self.get_payment(transaction_id)
        if not result.ok:
            return result
        current = result.value

        try:
            updated = await apply_transition(
                self.store, current, S.CANCELLED,
                source="orchestrator", detail="cancelled by caller",
            )
        except PersistenceError as e:
            return Err(e)

        if updated.status != S.CANCELLED:
            return Err(InvalidTransitionError(updated.status.value, S.CANCELLED.value))
        return Ok(updated)

    # ========================================================================
    # Refund
    # ========================================================================

    async def _committed_refunds(self, payment_id: str) -> Decimal:
        """Sum of refunds that have not failed, in flight ones included."""
        refunds = await self.store.list_refunds(payment_id)
        return sum(
            (r.amount for r in refunds if r.status != S.FAILED and r.amount is not None),
            Decimal("0"),
        )

    async def refund(self, data: RefundCreate, requested_by: Optional[str] = None) -> Result[Transaction]:
        """
        Refund all or part of a completed payment.

        Returns:
            Ok(refund transaction) on success or idempotent replay;
            Err(NotFoundError | ValidationError | GatewayError | PersistenceError)
        """
        try:
            return await self._refund(data, requested_by)
        except PersistenceError as e:
            return Err(e)

    async def _refund(self, data: RefundCreate, requested_by: Optional[str]) -> Result[Transaction]:
        parent = await self.store.get(data.payment_id)
        if parent is None or parent.kind == TransactionKind.REFUND:
            return Err(NotFoundError("Payment not found", {"paymentId": data.payment_id}))

        if data.idempotency_key:
            existing = await self.store.get_by_idempotency_key(data.idempotency_key)
            if existing is not None:
                return Ok(existing)

        if parent.status != S.COMPLETED:
            return Err(ValidationError("Payment cannot be refunded", [{
                "field": "paymentId",
                "message": f"Only completed payments can be refunded (status is {parent.status.value})",
            }]))
        if data.currency != parent.currency:
            return Err(ValidationError("Invalid refund request", [{
                "field": "currency",
                "message": f"Refund currency must match payment currency {parent.currency}",
            }]))

        remaining = parent.amount - await self._committed_refunds(parent.id)
        if data.amount > remaining:
            return Err(self._over_refund(remaining))

        gateway = self.gateways.for_method(parent.method) if parent.method else None
        if gateway is None or not parent.provider_ref:
            return Err(ValidationError("Payment cannot be refunded", [{
                "field": "paymentId",
                "message": "Payment has no provider reference to refund against",
            }]))

        now = utcnow()
        refund, created = await self.store.create(Transaction(
            id=new_transaction_id("rfd"),
            kind=TransactionKind.REFUND,
            status=S.PENDING,
            amount=data.amount,
            currency=data.currency,
            method=parent.method,
            customer=parent.customer,
            metadata={"requestedBy": requested_by} if requested_by else {},
            idempotency_key=data.idempotency_key,
            parent_transaction_id=parent.id,
            reason=data.reason,
            created_at=now,
            updated_at=now,
        ))
        if not created:
            return Ok(refund)

        # A concurrent refund may have slipped in between the check and insert
        committed = await self._committed_refunds(parent.id)
        if committed > parent.amount:
            await apply_transition(
                self.store, refund, S.FAILED,
                metadata_updates={"errorMessage": "Refund exceeded refundable balance"},
                source="orchestrator", detail="concurrent refund",
            )
            return Err(self._over_refund(parent.amount - (committed - data.amount)))

        refund = await apply_transition(
            self.store, refund, S.PROCESSING,
            source="orchestrator", detail=f"refund via {gateway.name}",
        )

        try:
            external = await self._call(
                "refund", gateway.refund,
                parent.provider_ref, data.amount, data.currency, refund.id, data.reason,
            )
        except GatewayError as e:
            logger.warning(f"Refund {refund.id} of {parent.id} failed: {e.message}")
            await apply_transition(
                self.store, refund, S.FAILED,
                metadata_updates={"errorMessage": e.message},
                source="orchestrator", detail="gateway error",
            )
            return Err(e)

        refund = await self.store.compare_and_set(
            refund,
            provider_ref=external.id,
            metadata={**refund.metadata, "providerStatus": external.raw_status},
        ) or refund

        if external.status == S.FAILED:
            await apply_transition(
                self.store, refund, S.FAILED,
                metadata_updates={"errorMessage": f"Refund declined by {gateway.name}: {external.raw_status}"},
                source="orchestrator", detail=external.raw_status,
            )
            return Err(GatewayError(f"refund declined: {external.raw_status}", provider=gateway.name))

        if external.status != S.COMPLETED:
            logger.info(f"Refund {refund.id} pending at {gateway.name} ({external.raw_status})")
            return Ok(refund)

        refund = await apply_transition(
            self.store, refund, S.COMPLETED,
            source="orchestrator", detail=external.raw_status,
        )
        parent = await apply_refund_to_parent(self.store, refund) or parent
        logger.info(
            f"Refunded {data.amount} {data.currency} of {parent.id} "
            f"(total {parent.refunded_amount} of {parent.amount})"
        )
        if self.notifications is not None:
            await self.notifications.send_refund_confirmation(refund, parent)
        return Ok(refund)

    @staticmethod
    def _over_refund(remaining: Decimal) -> ValidationError:
        return ValidationError("Refund exceeds refundable balance", [{
            "field": "amount",
            "message": f"At most {max(remaining, Decimal('0')):.2f} can be refunded",
        }])

