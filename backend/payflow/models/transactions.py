"""
Pydantic Transaction Models

Represents payments, transfers and refunds with their lifecycle status,
plus the inbound request schemas for creating them.
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionKind(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"
    TRANSFER = "transfer"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.REFUNDED,
    TransactionStatus.CANCELLED,
})


class PaymentMethod(str, Enum):
    """Selects the gateway adapter that executes a transaction."""
    WALLET_TOKEN = "wallet_token"
    CARD_PUSH = "card_push"
    BANK_TRANSFER = "bank_transfer"


class Customer(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None


class Transaction(BaseModel):
    """
    Durable record of a payment, transfer or refund attempt.

    Notes:
    - ``id`` and ``amount``/``currency`` never change after creation
    - ``version`` is bumped on every write and guards conditional updates
    - ``amount``/``currency``/``method`` are only empty on webhook placeholders
    """
    id: str
    kind: TransactionKind
    status: TransactionStatus
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    method: Optional[PaymentMethod] = None
    customer: Optional[Customer] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    provider_ref: Optional[str] = None
    idempotency_key: Optional[str] = None
    parent_transaction_id: Optional[str] = None
    reason: Optional[str] = None
    version: int = 0
    last_event_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_placeholder(self) -> bool:
        return bool(self.metadata.get("placeholder"))

    @property
    def refunded_amount(self) -> Decimal:
        return Decimal(str(self.metadata.get("refundedAmount", "0")))

    def summary(self) -> Dict[str, Any]:
        """Short form returned by ``POST /payments``."""
        return {
            "id": self.id,
            "status": self.status.value,
            "amount": float(self.amount) if self.amount is not None else None,
            "currency": self.currency,
        }

    def to_public_dict(self) -> Dict[str, Any]:
        """Full client view. Internal error text is never included."""
        metadata = {k: v for k, v in self.metadata.items() if k != "errorMessage"}
        data = {
            **self.summary(),
            "kind": self.kind.value,
            "method": self.method.value if self.method else None,
            "customer": self.customer.model_dump() if self.customer else None,
            "metadata": metadata,
            "providerRef": self.provider_ref,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        if self.kind == TransactionKind.REFUND:
            data["parentTransactionId"] = self.parent_transaction_id
            data["reason"] = self.reason
        return data


class TransactionEvent(BaseModel):
    """One status transition in a transaction's audit trail."""
    transaction_id: str
    from_status: Optional[TransactionStatus] = None
    to_status: TransactionStatus
    source: str
    detail: Optional[str] = None
    created_at: datetime

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "transactionId": self.transaction_id,
            "fromStatus": self.from_status.value if self.from_status else None,
            "toStatus": self.to_status.value,
            "source": self.source,
            "detail": self.detail,
            "createdAt": self.created_at.isoformat(),
        }


# ============================================================================
# Request Schemas
# ============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_currency(value: str) -> str:
    value = value.strip().upper()
    if len(value) != 3 or not value.isalpha():
        raise ValueError("currency must be a 3-letter ISO code")
    return value


class RecipientDetails(_CamelModel):
    """Bank account that receives a ``bank_transfer``."""
    account_holder_name: str = Field(min_length=1)
    iban: str = Field(min_length=15, max_length=34)
    currency: Optional[str] = None

    @field_validator("iban")
    @classmethod
    def strip_iban(cls, v: str) -> str:
        return v.replace(" ", "").upper()


class CardDetails(_CamelModel):
    """Card that receives a ``card_push`` payment."""
    recipient_primary_account_number: str = Field(pattern=r"^\d{12,19}$")
    expiry_date: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}$")
    recipient_name: Optional[str] = None


class WalletDetails(_CamelModel):
    """Encrypted wallet token produced by the browser payment sheet."""
    payment_token: Dict[str, Any]
    validation_url: Optional[str] = None


class PaymentCreate(_CamelModel):
    """Body of ``POST /payments``."""
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    currency: str
    customer_email: EmailStr
    customer_name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=255)
    target_currency: Optional[str] = None
    recipient: Optional[RecipientDetails] = None
    card: Optional[CardDetails] = None
    wallet: Optional[WalletDetails] = None

    @field_validator("currency")
    @classmethod
    def check_currency(cls, v: str) -> str:
        return _normalize_currency(v)

    @field_validator("target_currency")
    @classmethod
    def check_target_currency(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_currency(v) if v is not None else None


class RefundCreate(_CamelModel):
    """Body of ``POST /refunds``."""
    payment_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    currency: str
    reason: str = Field(min_length=1, max_length=500)
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=255)

    @field_validator("currency")
    @classmethod
    def check_currency(cls, v: str) -> str:
        return _normalize_currency(v)
