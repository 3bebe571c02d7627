"""
Mock Course Directory

In-memory course catalog for demos and tests.
Course CRUD belongs to the catalog service; this only answers lookups.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import logging

from ..collaborators import CourseDirectory
from ..models.directory import CourseInfo

logger = logging.getLogger(__name__)


def _default_catalog() -> List[CourseInfo]:
    now = datetime.utcnow()
    return [
        CourseInfo(
            course_id="course_a1_intensive",
            title="German A1 Intensive",
            status="upcoming",
            start_date=now + timedelta(days=14),
            seats_max=12,
            price_cents=34900,  # €349.00
            supervisor_id="sup_anna"
        ),
        CourseInfo(
            course_id="course_b1_evening",
            title="German B1 Evening Class",
            status="upcoming",
            start_date=now + timedelta(days=30),
            seats_max=8,
            price_cents=42900,  # €429.00
            supervisor_id="sup_jonas"
        ),
        CourseInfo(
            course_id="course_c1_private",
            title="German C1 Private Tutoring",
            status="upcoming",
            start_date=now + timedelta(days=7),
            seats_max=1,
            price_cents=89900,  # €899.00
            supervisor_id="sup_anna"
        ),
        CourseInfo(
            course_id="course_a2_running",
            title="German A2 (in progress)",
            status="ongoing",
            start_date=now - timedelta(days=10),
            seats_max=15,
            price_cents=29900,  # €299.00
        ),
    ]


class InMemoryCourseDirectory(CourseDirectory):
    """Course lookup backed by a dict; add_course replaces an existing entry."""

    def __init__(self, courses: Optional[List[CourseInfo]] = None):
        self._courses: Dict[str, CourseInfo] = {}
        for course in (_default_catalog() if courses is None else courses):
            self.add_course(course)

    def add_course(self, course: CourseInfo) -> None:
        self._courses[course.course_id] = course

    async def get_course(self, course_id: str) -> Optional[CourseInfo]:
        course = self._courses.get(course_id)
        if course is None:
            logger.debug(f"Course lookup miss: {course_id}")
        return course

    def list_courses(self) -> List[CourseInfo]:
        return list(self._courses.values())
