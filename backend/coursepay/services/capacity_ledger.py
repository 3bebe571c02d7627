"""
Course Capacity Ledger

Authoritative seat counter per course. The counter moves only through
confirm_seat (+1) and release_seat (-1), both single atomic UPDATEs scoped to
the course row, so concurrent settlements for one course never lose a count.
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from ..db.models import CourseCapacityModel
from ..models.payments import CapacitySnapshot

logger = logging.getLogger(__name__)


async def get_snapshot(db: AsyncSession, course_id: str) -> Optional[CapacitySnapshot]:
    result = await db.execute(
        select(CourseCapacityModel)
        .where(CourseCapacityModel.course_id == course_id)
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    return CapacitySnapshot(course_id=row.course_id, seats_taken=row.seats_taken, seats_max=row.seats_max)


async def ensure_course(db: AsyncSession, course_id: str, seats_max: int) -> CapacitySnapshot:
    """
    Create the ledger row for a course, or sync seats_max from the catalog.

    seats_taken is never written here.
    """
    stmt = sqlite_insert(CourseCapacityModel).values(
        course_id=course_id,
        seats_taken=0,
        seats_max=seats_max,
        updated_at=datetime.utcnow()
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[CourseCapacityModel.course_id],
        set_={"seats_max": seats_max}
    )
    await db.execute(stmt)
    return await get_snapshot(db, course_id)


async def confirm_seat(db: AsyncSession, course_id: str) -> None:
    """Take one seat for an enrollment that just became confirmed."""
    result = await db.execute(
        update(CourseCapacityModel)
        .where(CourseCapacityModel.course_id == course_id)
        .values(seats_taken=CourseCapacityModel.seats_taken + 1, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        # Settlement for a course that never went through admission
        logger.warning(f"No capacity row for course {course_id}; creating one with seats_max=0")
        db.add(CourseCapacityModel(course_id=course_id, seats_taken=1, seats_max=0))
        await db.flush()

    logger.info(f"Seat confirmed for course {course_id}")


async def release_seat(db: AsyncSession, course_id: str) -> None:
    """Give back one seat for an enrollment leaving confirmed/active."""
    result = await db.execute(
        update(CourseCapacityModel)
        .where(CourseCapacityModel.course_id == course_id, CourseCapacityModel.seats_taken > 0)
        .values(seats_taken=CourseCapacityModel.seats_taken - 1, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.warning(f"Seat release for course {course_id} found nothing to release")
        return

    logger.info(f"Seat released for course {course_id}")
