"""
Collaborator Ports

Interfaces the reconciliation core consumes from the rest of the platform.
Course catalog, user profiles and message delivery live elsewhere; the core
only sees these shapes. In-memory implementations live under mocks/.
"""
from abc import ABC, abstractmethod
from typing import Optional

from .models.directory import CourseInfo, UserInfo


class CourseDirectory(ABC):
    @abstractmethod
    async def get_course(self, course_id: str) -> Optional[CourseInfo]:
        """Return the course or None if it does not exist."""


class UserDirectory(ABC):
    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserInfo]:
        """Return the user or None if it does not exist."""


class NotificationSender(ABC):
    """
    Fire-and-forget in-app notifications.

    recipient is a user id or a role address such as "role:admin".
    """

    @abstractmethod
    async def notify(self, recipient: str, message: str) -> None:
        ...


class EmailSender(ABC):
    @abstractmethod
    async def send(self, to_email: str, subject: str, body: str) -> None:
        ...
