"""
SQLAlchemy ORM Models for Payflow

Tables: transactions, transaction_events, revoked_tokens.
"""
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class TransactionModel(Base):
    """
    ORM model for transactions table.

    Payments, transfers and refunds share one table; refunds point at their
    parent through ``parent_transaction_id``.
    """
    __tablename__ = "transactions"

    id = Column(String, primary_key=True)
    kind = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    amount = Column(Numeric(14, 2))  # Null only on webhook placeholders
    currency = Column(String(3))
    method = Column(String)
    customer_email = Column(String, index=True)
    customer_name = Column(String)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    provider_ref = Column(String, unique=True, index=True)
    idempotency_key = Column(String, unique=True, index=True)
    parent_transaction_id = Column(String, ForeignKey("transactions.id"), index=True)
    reason = Column(Text)
    version = Column(Integer, nullable=False, default=0)
    last_event_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("kind IN ('payment', 'refund', 'transfer')", name="kind_check"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'refunded', 'cancelled')",
            name="status_check"
        ),
        CheckConstraint(
            "method IN ('wallet_token', 'card_push', 'bank_transfer') OR method IS NULL",
            name="method_check"
        ),
        CheckConstraint("amount IS NULL OR amount > 0", name="amount_positive_check"),
    )


class TransactionEventModel(Base):
    """
    ORM model for transaction_events table.

    Append-only audit trail of status transitions.
    """
    __tablename__ = "transaction_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String, nullable=False, index=True)
    from_status = Column(String)
    to_status = Column(String, nullable=False)
    source = Column(String, nullable=False)
    detail = Column(Text)
    created_at = Column(DateTime, nullable=False, index=True)


class RevokedTokenModel(Base):
    """
    ORM model for revoked_tokens table.

    Stores a SHA-256 hash of each revoked bearer token until it would have
    expired on its own.
    """
    __tablename__ = "revoked_tokens"

    token_hash = Column(String(64), primary_key=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    revoked_at = Column(DateTime, nullable=False)
