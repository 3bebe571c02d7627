"""
Mock User Directory

In-memory user profiles for demos and tests.
"""
from typing import Dict, List, Optional

from ..collaborators import UserDirectory
from ..models.directory import UserInfo


DEMO_USERS: List[UserInfo] = [
    UserInfo(user_id="user_demo_001", email="lena@example.com", name="Lena Vogel"),
    UserInfo(user_id="user_demo_002", email="rahim@example.com", name="Rahim Chowdhury"),
    UserInfo(user_id="user_demo_003", email="marta@example.com", name="Marta Kowalska"),
]


class InMemoryUserDirectory(UserDirectory):
    def __init__(self, users: Optional[List[UserInfo]] = None):
        self._users: Dict[str, UserInfo] = {u.user_id: u for u in (DEMO_USERS if users is None else users)}

    def add_user(self, user: UserInfo) -> None:
        self._users[user.user_id] = user

    async def get_user(self, user_id: str) -> Optional[UserInfo]:
        return self._users.get(user_id)
