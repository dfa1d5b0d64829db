"""
Gateway Value Objects

Provider-neutral shapes returned by every payment gateway adapter. Each
adapter maps its own response vocabulary onto ``TransactionStatus`` before
building these.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from .transactions import TransactionStatus


@dataclass
class Quote:
    id: str
    rate: Decimal
    source_amount: Decimal
    source_currency: str
    target_currency: str
    expires_at: Optional[datetime] = None


@dataclass
class ExternalRef:
    """Recipient account or payment session created at the provider."""
    id: str
    kind: str  # "recipient" or "session"
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExternalTransfer:
    id: str
    status: TransactionStatus
    raw_status: str


@dataclass
class ExternalStatus:
    external_id: str
    status: TransactionStatus
    raw_status: str


@dataclass
class ExternalRefund:
    id: str
    status: TransactionStatus
    raw_status: str


@dataclass
class WebhookEvent:
    """
    Normalized provider event.

    ``external_ref`` is None for events that carry no transaction status
    (those are acknowledged and ignored).
    """
    event_type: str
    external_ref: Optional[str]
    new_status: TransactionStatus
    raw_status: str
    occurred_at: datetime
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
