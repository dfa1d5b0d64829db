"""
Transaction Store

Durable record of payments, transfers and refunds.

Every row update is a single conditional write guarded by the row's
``version``: the caller passes the snapshot it read, and the update only
applies if nobody wrote in between. Losers get ``None`` back and re-read;
nothing holds a lock across an await.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db.models import TransactionEventModel, TransactionModel
from ..exceptions import PersistenceError
from ..models.transactions import (
    Customer,
    PaymentMethod,
    Transaction,
    TransactionEvent,
    TransactionKind,
    TransactionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()


def new_transaction_id(prefix: str = "txn") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _to_domain(row: TransactionModel) -> Transaction:
    customer = None
    if row.customer_email or row.customer_name:
        customer = Customer(email=row.customer_email, name=row.customer_name)

    return Transaction(
        id=row.id,
        kind=TransactionKind(row.kind),
        status=TransactionStatus(row.status),
        amount=Decimal(str(row.amount)) if row.amount is not None else None,
        currency=row.currency,
        method=PaymentMethod(row.method) if row.method else None,
        customer=customer,
        metadata=dict(row.metadata_json or {}),
        provider_ref=row.provider_ref,
        idempotency_key=row.idempotency_key,
        parent_transaction_id=row.parent_transaction_id,
        reason=row.reason,
        version=row.version,
        last_event_at=row.last_event_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _event_to_domain(row: TransactionEventModel) -> TransactionEvent:
    return TransactionEvent(
        transaction_id=row.transaction_id,
        from_status=TransactionStatus(row.from_status) if row.from_status else None,
        to_status=TransactionStatus(row.to_status),
        source=row.source,
        detail=row.detail,
        created_at=row.created_at,
    )


class TransactionStore:
    """Async persistence for transactions and their audit events."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Transaction store error: {type(e).__name__}: {e}")
            raise PersistenceError() from e

    # ========================================================================
    # Creation
    # ========================================================================

    async def create(self, transaction: Transaction, source: str = "orchestrator") -> Tuple[Transaction, bool]:
        """
        Insert a new transaction.

        Args:
            transaction: Fully built transaction (id, timestamps, version 0)
            source: Recorded on the initial audit event

        Returns:
            ``(transaction, True)`` when inserted, or ``(existing, False)``
            when the idempotency key or provider reference already exists

        Raises:
            PersistenceError: If the store is unavailable
        """
        row = TransactionModel(
            id=transaction.id,
            kind=transaction.kind.value,
            status=transaction.status.value,
            amount=transaction.amount,
            currency=transaction.currency,
            method=transaction.method.value if transaction.method else None,
            customer_email=transaction.customer.email if transaction.customer else None,
            customer_name=transaction.customer.name if transaction.customer else None,
            metadata_json=transaction.metadata,
            provider_ref=transaction.provider_ref,
            idempotency_key=transaction.idempotency_key,
            parent_transaction_id=transaction.parent_transaction_id,
            reason=transaction.reason,
            version=transaction.version,
            last_event_at=transaction.last_event_at,
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
        )

        try:
            async with self._session() as session:
                session.add(row)
                session.add(TransactionEventModel(
                    transaction_id=transaction.id,
                    from_status=None,
                    to_status=transaction.status.value,
                    source=source,
                    detail="created",
                    created_at=transaction.created_at,
                ))
                await session.commit()
        except IntegrityError:
            existing = None
            if transaction.idempotency_key:
                existing = await self.get_by_idempotency_key(transaction.idempotency_key)
            if existing is None and transaction.provider_ref:
                existing = await self.get_by_provider_ref(transaction.provider_ref)
            if existing is None:
                logger.error(f"Integrity error inserting transaction {transaction.id}")
                raise PersistenceError()
            logger.info(
                f"Duplicate create for {transaction.id} resolved to existing {existing.id}"
            )
            return existing, False

        logger.info(
            f"Created transaction: {transaction.id}, kind={transaction.kind.value}, "
            f"status={transaction.status.value}, method={transaction.method.value if transaction.method else None}"
        )
        return transaction, True

    # ========================================================================
    # Retrieval
    # ========================================================================

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        async with self._session() as session:
            row = await session.get(TransactionModel, transaction_id)
            return _to_domain(row) if row else None

    async def get_by_provider_ref(self, provider_ref: str) -> Optional[Transaction]:
        async with self._session() as session:
            result = await session.execute(
                select(TransactionModel).where(TransactionModel.provider_ref == provider_ref)
            )
            row = result.scalar_one_or_none()
            return _to_domain(row) if row else None

    async def get_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        async with self._session() as session:
            result = await session.execute(
                select(TransactionModel).where(TransactionModel.idempotency_key == key)
            )
            row = result.scalar_one_or_none()
            return _to_domain(row) if row else None

    async def list_refunds(self, parent_transaction_id: str) -> List[Transaction]:
        """Refunds of a transaction, most recent first."""
        async with self._session() as session:
            result = await session.execute(
                select(TransactionModel)
                .where(
                    TransactionModel.parent_transaction_id == parent_transaction_id,
                    TransactionModel.kind == TransactionKind.REFUND.value,
                )
                .order_by(TransactionModel.created_at.desc())
            )
            return [_to_domain(row) for row in result.scalars().all()]

    async def list_events(self, transaction_id: str) -> List[TransactionEvent]:
        """Audit trail of a transaction, oldest first."""
        async with self._session() as session:
            result = await session.execute(
                select(TransactionEventModel)
                .where(TransactionEventModel.transaction_id == transaction_id)
                .order_by(TransactionEventModel.id)
            )
            return [_event_to_domain(row) for row in result.scalars().all()]

    # ========================================================================
    # Conditional Updates
    # ========================================================================

    async def compare_and_set(
        self,
        current: Transaction,
        *,
        status: Optional[TransactionStatus] = None,
        metadata: Optional[Dict[str, Any]] = None,
        provider_ref: Optional[str] = _UNSET,
        last_event_at: Optional[datetime] = None,
        source: str = "orchestrator",
        detail: Optional[str] = None
    ) -> Optional[Transaction]:
        """
        Apply an update only if the row still matches ``current``.

        Args:
            current: Snapshot the caller decided on
            status: New status, or None to keep it
            metadata: Full replacement metadata map, or None to keep it
            provider_ref: New provider reference (omit to keep)
            last_event_at: occurredAt of the provider event being applied
            source: Who made the change, recorded on the audit event
            detail: Free text for the audit event

        Returns:
            The updated transaction, or None if another writer got there
            first (caller should re-read and re-evaluate)
        """
        async with self._session() as session:
            return await self._compare_and_set(
                session, current,
                status=status, metadata=metadata, provider_ref=provider_ref,
                last_event_at=last_event_at, source=source, detail=detail,
            )

    async def _compare_and_set(
        self,
        session: AsyncSession,
        current: Transaction,
        *,
        status: Optional[TransactionStatus],
        metadata: Optional[Dict[str, Any]],
        provider_ref: Optional[str],
        last_event_at: Optional[datetime],
        source: str,
        detail: Optional[str]
    ) -> Optional[Transaction]:
        now = max(utcnow(), current.updated_at)
        values: Dict[str, Any] = {"version": current.version + 1, "updated_at": now}
        if status is not None:
            values["status"] = status.value
        if metadata is not None:
            values["metadata_json"] = metadata
        if provider_ref is not _UNSET:
            values["provider_ref"] = provider_ref
        if last_event_at is not None:
            values["last_event_at"] = last_event_at

        result = await session.execute(
            update(TransactionModel)
            .where(
                TransactionModel.id == current.id,
                TransactionModel.version == current.version,
                TransactionModel.status == current.status.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            logger.debug(f"Conditional write lost for {current.id} at version {current.version}")
            return None

        if status is not None and status != current.status:
            session.add(TransactionEventModel(
                transaction_id=current.id,
                from_status=current.status.value,
                to_status=status.value,
                source=source,
                detail=detail,
                created_at=now,
            ))

        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.warning(f"Conditional write for {current.id} violated a uniqueness constraint")
            return None

        updated = current.model_copy(update={
            "version": current.version + 1,
            "updated_at": now,
            "status": status if status is not None else current.status,
            "metadata": metadata if metadata is not None else current.metadata,
            "provider_ref": provider_ref if provider_ref is not _UNSET else current.provider_ref,
            "last_event_at": last_event_at if last_event_at is not None else current.last_event_at,
        })
        if status is not None and status != current.status:
            logger.info(
                f"Transaction {current.id}: {current.status.value} -> {status.value} ({source})"
            )
        return updated

    async def attach_provider_ref(
        self,
        current: Transaction,
        provider_ref: str,
        metadata: Dict[str, Any]
    ) -> Tuple[Optional[Transaction], Optional[Transaction]]:
        """
        Record a provider id on a transaction.

        A webhook may have arrived before this write and left a placeholder
        holding the same reference. The placeholder is removed in the same
        database transaction and returned so the caller can apply its status.

        Returns:
            ``(updated, merged_placeholder)``; ``updated`` is None when the
            conditional write lost
        """
        async with self._session() as session:
            result = await session.execute(
                select(TransactionModel).where(
                    TransactionModel.provider_ref == provider_ref,
                    TransactionModel.id != current.id,
                )
            )
            holder = result.scalar_one_or_none()
            placeholder = None

            if holder is not None:
                holder_tx = _to_domain(holder)
                if not holder_tx.is_placeholder:
                    logger.error(
                        f"Provider ref {provider_ref} already belongs to {holder_tx.id}; "
                        f"keeping it in metadata of {current.id} only"
                    )
                    return await self._compare_and_set(
                        session, current,
                        status=None, metadata=metadata, provider_ref=_UNSET,
                        last_event_at=None, source="orchestrator", detail=None,
                    ), None

                placeholder = holder_tx
                await session.execute(
                    delete(TransactionEventModel).where(
                        TransactionEventModel.transaction_id == holder_tx.id
                    )
                )
                await session.execute(
                    delete(TransactionModel).where(TransactionModel.id == holder_tx.id)
                )
                logger.info(f"Merging webhook placeholder {holder_tx.id} into {current.id}")

            updated = await self._compare_and_set(
                session, current,
                status=None, metadata=metadata, provider_ref=provider_ref,
                last_event_at=None, source="orchestrator", detail=None,
            )
            return updated, (placeholder if updated is not None else None)
