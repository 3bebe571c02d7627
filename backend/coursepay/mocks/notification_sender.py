"""
Mock Notification and Email Senders

Record every message instead of delivering it. Used in demo mode and tests.
"""
from dataclasses import dataclass
from typing import List
import logging

from ..collaborators import NotificationSender, EmailSender

logger = logging.getLogger(__name__)


@dataclass
class SentNotification:
    recipient: str
    message: str


@dataclass
class SentEmail:
    to_email: str
    subject: str
    body: str


class RecordingNotificationSender(NotificationSender):
    def __init__(self):
        self.sent: List[SentNotification] = []

    async def notify(self, recipient: str, message: str) -> None:
        self.sent.append(SentNotification(recipient=recipient, message=message))
        logger.info(f"[notification] to={recipient}: {message}")

    def recipients(self) -> List[str]:
        return [n.recipient for n in self.sent]


class RecordingEmailSender(EmailSender):
    def __init__(self):
        self.sent: List[SentEmail] = []

    async def send(self, to_email: str, subject: str, body: str) -> None:
        self.sent.append(SentEmail(to_email=to_email, subject=subject, body=body))
        logger.info(f"[email] to={to_email}: {subject}")
