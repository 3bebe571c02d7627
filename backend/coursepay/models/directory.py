"""
Pydantic Collaborator Models

Shapes returned by the course and user lookups the core consumes.
"""
from datetime import datetime
from typing import Optional, Literal
from pydantic import BaseModel, Field


class CourseInfo(BaseModel):
    course_id: str
    title: str
    status: Literal["upcoming", "ongoing", "completed", "cancelled"]
    start_date: datetime
    seats_max: int = Field(ge=0)
    price_cents: int = Field(ge=0)
    currency: str = "EUR"
    supervisor_id: Optional[str] = None

    def has_started(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) >= self.start_date


class UserInfo(BaseModel):
    user_id: str
    email: str
    name: str
