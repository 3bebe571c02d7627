"""
Payment Store

Durable ledger of payment attempts. Reads return PaymentRecord snapshots;
the only status write is a compare-and-swap used by the reconciliation engine.
None of these functions commit; the caller owns the transaction.
"""
import json
import uuid
from datetime import datetime
from typing import Dict, Any, List, Optional
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from ..db.models import PaymentModel
from ..models.payments import PaymentRecord, PaymentStatus, PaymentMethod
from ..models.settlement import SettlementEvent

logger = logging.getLogger(__name__)


IN_FLIGHT_STATUSES = (
    PaymentStatus.PENDING,
    PaymentStatus.PROCESSING,
    PaymentStatus.REQUIRES_ACTION,
)


def _select_payments():
    # Rows may already sit in the identity map from before a conditional UPDATE
    return select(PaymentModel).execution_options(populate_existing=True)


def _to_record(row: PaymentModel) -> PaymentRecord:
    return PaymentRecord(
        id=row.id,
        user_id=row.user_id,
        course_id=row.course_id,
        amount_cents=row.amount_cents,
        currency=row.currency,
        method=row.method,
        external_transaction_id=row.external_transaction_id,
        gateway_reference_id=row.gateway_reference_id,
        status=row.status,
        failure_reason=row.failure_reason,
        provider_metadata=json.loads(row.provider_metadata) if row.provider_metadata else {},
        settled_at=row.settled_at,
        refunded_at=row.refunded_at,
        created_at=row.created_at,
        updated_at=row.updated_at
    )


# ============================================================================
# Lookups
# ============================================================================

async def get_by_id(db: AsyncSession, payment_id: str) -> Optional[PaymentRecord]:
    result = await db.execute(_select_payments().where(PaymentModel.id == payment_id))
    row = result.scalar_one_or_none()
    return _to_record(row) if row else None


async def get_by_external_id(db: AsyncSession, external_transaction_id: str) -> Optional[PaymentRecord]:
    result = await db.execute(
        _select_payments().where(PaymentModel.external_transaction_id == external_transaction_id)
    )
    row = result.scalar_one_or_none()
    return _to_record(row) if row else None


async def get_by_gateway_reference(db: AsyncSession, gateway_reference_id: str) -> Optional[PaymentRecord]:
    result = await db.execute(
        _select_payments().where(PaymentModel.gateway_reference_id == gateway_reference_id)
    )
    row = result.scalar_one_or_none()
    return _to_record(row) if row else None


async def find_for_event(db: AsyncSession, event: SettlementEvent) -> Optional[PaymentRecord]:
    """
    Resolve the payment a settlement event targets.

    Looks up by external transaction id first and falls back to the
    gateway reference id.
    """
    if event.external_transaction_id:
        payment = await get_by_external_id(db, event.external_transaction_id)
        if payment:
            return payment

    if event.gateway_reference_id:
        return await get_by_gateway_reference(db, event.gateway_reference_id)

    return None


async def list_for_user(db: AsyncSession, user_id: str, limit: int = 50) -> List[PaymentRecord]:
    result = await db.execute(
        _select_payments()
        .where(PaymentModel.user_id == user_id)
        .order_by(PaymentModel.created_at.desc())
        .limit(limit)
    )
    return [_to_record(row) for row in result.scalars().all()]


async def list_stale(db: AsyncSession, created_before: datetime, limit: int = 100) -> List[PaymentRecord]:
    """Payments still in flight that were created before the cutoff."""
    result = await db.execute(
        _select_payments()
        .where(
            PaymentModel.status.in_([s.value for s in IN_FLIGHT_STATUSES]),
            PaymentModel.created_at < created_before
        )
        .order_by(PaymentModel.created_at)
        .limit(limit)
    )
    return [_to_record(row) for row in result.scalars().all()]


async def get_stats(db: AsyncSession) -> Dict[str, Any]:
    """
    Payment counts per status plus settled revenue.

    Returns:
        Dict with total_payments, by_status and completed_amount_cents
    """
    result = await db.execute(
        select(PaymentModel.status, func.count(PaymentModel.id), func.sum(PaymentModel.amount_cents))
        .group_by(PaymentModel.status)
    )
    by_status = {status.value: 0 for status in PaymentStatus}
    completed_amount = 0
    for status, count, amount in result.all():
        by_status[status] = count
        if status == PaymentStatus.COMPLETED.value:
            completed_amount = amount or 0

    return {
        "total_payments": sum(by_status.values()),
        "by_status": by_status,
        "completed_amount_cents": completed_amount
    }


# ============================================================================
# Writes
# ============================================================================

async def insert_pending(
    db: AsyncSession,
    user_id: str,
    course_id: str,
    amount_cents: int,
    currency: str,
    method: PaymentMethod,
    external_transaction_id: str
) -> PaymentRecord:
    """
    Insert a new pending payment attempt.

    Raises:
        IntegrityError: external_transaction_id already exists (surfaces at flush)
    """
    now = datetime.utcnow()
    row = PaymentModel(
        id=f"pay_{uuid.uuid4().hex[:16]}",
        user_id=user_id,
        course_id=course_id,
        amount_cents=amount_cents,
        currency=currency,
        method=method.value,
        external_transaction_id=external_transaction_id,
        status=PaymentStatus.PENDING.value,
        provider_metadata=json.dumps({}),
        created_at=now,
        updated_at=now
    )
    db.add(row)
    await db.flush()

    logger.info(
        f"Inserted pending payment {row.id}: txn={external_transaction_id}, "
        f"user={user_id}, course={course_id}, amount={amount_cents} {currency}"
    )
    return _to_record(row)


async def compare_and_set_status(
    db: AsyncSession,
    payment_id: str,
    expected: PaymentStatus,
    target: PaymentStatus,
    gateway_reference_id: Optional[str] = None,
    failure_reason: Optional[str] = None,
    provider_metadata: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Move a payment from expected to target in a single conditional UPDATE.

    settled_at is stamped on entry into completed and refunded_at on entry
    into refunded. A gateway reference is only filled in if none is stored.

    Returns:
        True if this call performed the transition, False if the row was no
        longer in the expected status
    """
    now = datetime.utcnow()
    values: Dict[str, Any] = {"status": target.value, "updated_at": now}

    if target == PaymentStatus.COMPLETED:
        values["settled_at"] = now
    if target == PaymentStatus.REFUNDED:
        values["refunded_at"] = now
    if gateway_reference_id:
        values["gateway_reference_id"] = func.coalesce(PaymentModel.gateway_reference_id, gateway_reference_id)
    if failure_reason is not None:
        values["failure_reason"] = failure_reason
    if provider_metadata is not None:
        values["provider_metadata"] = json.dumps(provider_metadata)

    result = await db.execute(
        update(PaymentModel)
        .where(PaymentModel.id == payment_id, PaymentModel.status == expected.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def set_gateway_reference_if_missing(db: AsyncSession, payment_id: str, gateway_reference_id: str) -> bool:
    """Store the provider id once. Returns False when one is already set."""
    result = await db.execute(
        update(PaymentModel)
        .where(PaymentModel.id == payment_id, PaymentModel.gateway_reference_id.is_(None))
        .values(gateway_reference_id=gateway_reference_id, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
