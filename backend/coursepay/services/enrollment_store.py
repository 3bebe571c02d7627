"""
Enrollment Store

One enrollment per (user, course), ever. New payment attempts re-point the
existing row rather than inserting another one.
"""
import uuid
from datetime import datetime
from typing import Dict, Any, List, Optional
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from ..db.models import EnrollmentModel
from ..models.payments import EnrollmentRecord, EnrollmentStatus, SEAT_HOLDING_STATUSES

logger = logging.getLogger(__name__)


def _select_enrollments():
    # Rows may already sit in the identity map from before a conditional UPDATE
    return select(EnrollmentModel).execution_options(populate_existing=True)


def _to_record(row: EnrollmentModel) -> EnrollmentRecord:
    return EnrollmentRecord(
        id=row.id,
        user_id=row.user_id,
        course_id=row.course_id,
        payment_id=row.payment_id,
        status=row.status,
        confirmed_at=row.confirmed_at,
        cancelled_at=row.cancelled_at,
        created_at=row.created_at,
        updated_at=row.updated_at
    )


async def get_by_id(db: AsyncSession, enrollment_id: str) -> Optional[EnrollmentRecord]:
    result = await db.execute(_select_enrollments().where(EnrollmentModel.id == enrollment_id))
    row = result.scalar_one_or_none()
    return _to_record(row) if row else None


async def get_for_pair(db: AsyncSession, user_id: str, course_id: str) -> Optional[EnrollmentRecord]:
    result = await db.execute(
        _select_enrollments().where(
            EnrollmentModel.user_id == user_id,
            EnrollmentModel.course_id == course_id
        )
    )
    row = result.scalar_one_or_none()
    return _to_record(row) if row else None


async def list_for_user(db: AsyncSession, user_id: str) -> List[EnrollmentRecord]:
    result = await db.execute(
        _select_enrollments()
        .where(EnrollmentModel.user_id == user_id)
        .order_by(EnrollmentModel.created_at.desc())
    )
    return [_to_record(row) for row in result.scalars().all()]


async def count_seat_holders(db: AsyncSession, course_id: str) -> int:
    result = await db.execute(
        select(func.count(EnrollmentModel.id)).where(
            EnrollmentModel.course_id == course_id,
            EnrollmentModel.status.in_([s.value for s in SEAT_HOLDING_STATUSES])
        )
    )
    return result.scalar_one()


async def insert(
    db: AsyncSession,
    user_id: str,
    course_id: str,
    payment_id: str,
    status: EnrollmentStatus = EnrollmentStatus.PENDING
) -> EnrollmentRecord:
    """
    Insert the enrollment for a (user, course) pair.

    Raises:
        IntegrityError: the pair already has an enrollment (surfaces at flush)
    """
    now = datetime.utcnow()
    row = EnrollmentModel(
        id=f"enr_{uuid.uuid4().hex[:16]}",
        user_id=user_id,
        course_id=course_id,
        payment_id=payment_id,
        status=status.value,
        confirmed_at=now if status == EnrollmentStatus.CONFIRMED else None,
        created_at=now,
        updated_at=now
    )
    db.add(row)
    await db.flush()

    logger.info(f"Inserted {status.value} enrollment {row.id}: user={user_id}, course={course_id}, payment={payment_id}")
    return _to_record(row)


async def compare_and_set_status(
    db: AsyncSession,
    enrollment_id: str,
    expected: EnrollmentStatus,
    target: EnrollmentStatus,
    payment_id: Optional[str] = None
) -> bool:
    """
    Conditionally move an enrollment from expected to target.

    Args:
        payment_id: When given, the enrollment is re-pointed at this payment
            in the same UPDATE

    Returns:
        True if the row was in the expected status and is now in target
    """
    now = datetime.utcnow()
    values: Dict[str, Any] = {"status": target.value, "updated_at": now}

    if target == EnrollmentStatus.CONFIRMED:
        values["confirmed_at"] = now
        values["cancelled_at"] = None
    elif target == EnrollmentStatus.CANCELLED:
        values["cancelled_at"] = now
    elif target == EnrollmentStatus.PENDING:
        values["cancelled_at"] = None
    if payment_id:
        values["payment_id"] = payment_id

    result = await db.execute(
        update(EnrollmentModel)
        .where(EnrollmentModel.id == enrollment_id, EnrollmentModel.status == expected.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
