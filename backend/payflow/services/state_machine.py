"""
Transaction status transitions.

Two tables: the orchestrator's own lifecycle writes, and the narrower set a
provider webhook (or status poll) may apply.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, Optional, TYPE_CHECKING

from ..exceptions import InvalidTransitionError, PersistenceError
from ..models.transactions import Transaction, TransactionKind, TransactionStatus as S

if TYPE_CHECKING:
    from .transaction_store import TransactionStore

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5

ALLOWED: Dict[S, FrozenSet[S]] = {
    S.PENDING: frozenset({S.PROCESSING, S.CANCELLED, S.FAILED}),
    S.PROCESSING: frozenset({S.COMPLETED, S.FAILED}),
    S.COMPLETED: frozenset({S.REFUNDED}),
    S.FAILED: frozenset(),
    S.REFUNDED: frozenset(),
    S.CANCELLED: frozenset(),
}

# Completed is sticky: providers can only move it on to refunded
RECONCILABLE: Dict[S, FrozenSet[S]] = {
    S.PENDING: frozenset({S.COMPLETED, S.FAILED}),
    S.PROCESSING: frozenset({S.COMPLETED, S.FAILED}),
    S.COMPLETED: frozenset({S.REFUNDED}),
    S.FAILED: frozenset(),
    S.REFUNDED: frozenset(),
    S.CANCELLED: frozenset(),
}


def can_transition(old: S, new: S) -> bool:
    return new in ALLOWED[old]


def can_reconcile(old: S, new: S) -> bool:
    return new in RECONCILABLE[old]


def assert_transition(old: S, new: S) -> None:
    if not can_transition(old, new):
        raise InvalidTransitionError(old.value, new.value)


def is_stale(current: Transaction, occurred_at: Optional[datetime]) -> bool:
    """True when a provider event is older than the last one applied."""
    return (
        occurred_at is not None
        and current.last_event_at is not None
        and occurred_at < current.last_event_at
    )


async def apply_transition(
    store: "TransactionStore",
    current: Transaction,
    target: S,
    *,
    rules: Callable[[S, S], bool] = can_transition,
    metadata_updates: Optional[Dict[str, Any]] = None,
    occurred_at: Optional[datetime] = None,
    source: str = "orchestrator",
    detail: Optional[str] = None
) -> Transaction:
    """
    Move a transaction to ``target`` with compare-and-set, re-reading and
    re-evaluating the rules after every lost write.

    Args:
        store: Transaction store
        current: Latest snapshot the caller holds
        target: Desired status
        rules: Transition table to check against
        metadata_updates: Keys merged into metadata with the status change,
            or on their own when the row already has ``target``
        occurred_at: Provider event time; older events than the last
            applied one are dropped
        source: Recorded on the audit event
        detail: Recorded on the audit event

    Returns:
        The transaction after the attempt. Its status equals ``target`` only
        if the transition was applied (or had already happened).

    Raises:
        PersistenceError: If the store is unavailable or contention never
            settles
    """
    for _ in range(MAX_CAS_ATTEMPTS):
        if current.status == target:
            if not metadata_updates or all(current.metadata.get(k) == v for k, v in metadata_updates.items()):
                return current
            # Already there; keep the caller's metadata without a new audit event
            updated = await store.compare_and_set(current, metadata={**current.metadata, **metadata_updates})
        else:
            if is_stale(current, occurred_at):
                logger.info(f"Ignoring stale {target.value} event for {current.id}")
                return current
            if not rules(current.status, target):
                logger.info(
                    f"Transition {current.status.value} -> {target.value} not allowed for {current.id} ({source})"
                )
                return current

            metadata = {**current.metadata, **metadata_updates} if metadata_updates else None
            updated = await store.compare_and_set(
                current,
                status=target,
                metadata=metadata,
                last_event_at=occurred_at,
                source=source,
                detail=detail,
            )
        if updated is not None:
            return updated

        reread = await store.get(current.id)
        if reread is None:
            logger.error(f"Transaction {current.id} disappeared during transition to {target.value}")
            return current
        current = reread

    logger.error(f"Gave up moving {current.id} to {target.value} after {MAX_CAS_ATTEMPTS} conflicting writes")
    raise PersistenceError("Transaction is being updated concurrently")


async def apply_refund_to_parent(store: "TransactionStore", refund: Transaction) -> Optional[Transaction]:
    """
    Bring the parent payment in line with its completed refunds.

    ``refundedAmount`` is recomputed from every completed refund, so calling
    this again for the same refund changes nothing. The parent moves to
    refunded once the total covers the payment amount.

    Returns:
        The parent after the update, or None if ``refund`` has no parent
    """
    if refund.kind != TransactionKind.REFUND or not refund.parent_transaction_id:
        return None

    for _ in range(MAX_CAS_ATTEMPTS):
        parent = await store.get(refund.parent_transaction_id)
        if parent is None:
            logger.error(f"Refund {refund.id} points at missing payment {refund.parent_transaction_id}")
            return None

        refunds = await store.list_refunds(parent.id)
        total = sum(
            (r.amount for r in refunds if r.status == S.COMPLETED and r.amount is not None),
            Decimal("0"),
        )
        fully_refunded = parent.amount is not None and total >= parent.amount and parent.status == S.COMPLETED
        if total == parent.refunded_amount and not fully_refunded:
            return parent

        updated = await store.compare_and_set(
            parent,
            status=S.REFUNDED if fully_refunded else None,
            metadata={**parent.metadata, "refundedAmount": str(total)},
            source="orchestrator",
            detail="fully refunded" if fully_refunded else None,
        )
        if updated is not None:
            return updated

    raise PersistenceError("Could not record refund on payment")
