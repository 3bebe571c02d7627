"""
Courses API Endpoints

Read-only view of the capacity ledger.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any

from ..collaborators import CourseDirectory
from ..exceptions import CourseNotFoundError
from ..services import capacity_ledger, enrollment_store
from .deps import get_course_directory, get_session

router = APIRouter()


@router.get("/{course_id}/capacity")
async def get_capacity(
    course_id: str,
    db: AsyncSession = Depends(get_session),
    courses: CourseDirectory = Depends(get_course_directory)
) -> Dict[str, Any]:
    """
    Seat usage for a course.

    Returns:
        {
            "course_id": str,
            "seats_taken": int,
            "seats_max": int,
            "seats_available": int,  # never negative, even when over-admitted
            "is_full": bool,
            "seat_holders": int  # enrollments currently holding a seat
        }
    """
    snapshot = await capacity_ledger.get_snapshot(db, course_id)
    if snapshot is None:
        course = await courses.get_course(course_id)
        if course is None:
            raise CourseNotFoundError(f"Course {course_id} not found")
        seats_taken, seats_max = 0, course.seats_max
    else:
        seats_taken, seats_max = snapshot.seats_taken, snapshot.seats_max

    return {
        "course_id": course_id,
        "seats_taken": seats_taken,
        "seats_max": seats_max,
        "seats_available": max(seats_max - seats_taken, 0),
        "is_full": seats_taken >= seats_max,
        "seat_holders": await enrollment_store.count_seat_holders(db, course_id)
    }
