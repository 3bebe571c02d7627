"""
Side-Effect Dispatcher

Runs the follow-up work for a first-time successful settlement:
- Notify the enrolled user
- Notify the course supervisor (if one is assigned)
- Notify administrators
- Email the user an enrollment confirmation
- Publish EnrollmentConfirmed to subscribers (certificate eligibility, analytics)

The settlement is already committed when this runs. Each step is isolated:
a failing collaborator is logged and the remaining steps still run.
"""
from typing import Awaitable, Callable, List, Optional
import logging

from ..collaborators import CourseDirectory, UserDirectory, NotificationSender, EmailSender
from ..models.directory import UserInfo
from ..models.settlement import SettlementResult, EnrollmentConfirmed

logger = logging.getLogger(__name__)

ADMIN_ROLE = "role:admin"

EnrollmentConfirmedHandler = Callable[[EnrollmentConfirmed], Awaitable[None]]


class SideEffectDispatcher:
    def __init__(
        self,
        courses: CourseDirectory,
        users: UserDirectory,
        notifications: NotificationSender,
        emails: EmailSender
    ):
        self.courses = courses
        self.users = users
        self.notifications = notifications
        self.emails = emails
        self._subscribers: List[EnrollmentConfirmedHandler] = []
        self.dispatch_count = 0

    def subscribe(self, handler: EnrollmentConfirmedHandler) -> None:
        """Register an async handler for EnrollmentConfirmed events."""
        self._subscribers.append(handler)

    async def dispatch(self, result: SettlementResult) -> None:
        """
        Fire side effects for a settlement result.

        Does nothing unless the result is a first-time completion. Never raises.
        """
        if not result.is_first_completion:
            return

        self.dispatch_count += 1
        payment = result.payment
        enrollment = result.enrollment
        logger.info(f"Dispatching side effects for payment {payment.id} (course {payment.course_id})")

        course = await self._lookup("course lookup", self.courses.get_course(payment.course_id))
        user = await self._lookup("user lookup", self.users.get_user(payment.user_id))
        course_title = course.title if course else payment.course_id

        await self._step(
            "notify user",
            self.notifications.notify(
                payment.user_id,
                f"Your payment was received and your seat in {course_title} is confirmed."
            )
        )

        if course and course.supervisor_id:
            await self._step(
                "notify supervisor",
                self.notifications.notify(
                    course.supervisor_id,
                    f"New student enrolled in {course_title}: {self._display_name(user, payment.user_id)}"
                )
            )

        await self._step(
            "notify admins",
            self.notifications.notify(
                ADMIN_ROLE,
                f"Payment {payment.external_transaction_id} settled: "
                f"{payment.amount_cents / 100:.2f} {payment.currency} for {course_title}"
            )
        )

        if user:
            await self._step(
                "email user",
                self.emails.send(
                    user.email,
                    f"Enrollment confirmed: {course_title}",
                    self._confirmation_body(user, course_title, payment.external_transaction_id)
                )
            )
        else:
            logger.warning(f"No profile for user {payment.user_id}; confirmation email skipped")

        if enrollment:
            event = EnrollmentConfirmed(
                user_id=payment.user_id,
                course_id=payment.course_id,
                enrollment_id=enrollment.id
            )
            for handler in self._subscribers:
                await self._step(f"publish to {getattr(handler, '__name__', handler)}", handler(event))

    async def _step(self, name: str, awaitable: Awaitable[None]) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception(f"Side effect '{name}' failed; settlement is unaffected")

    async def _lookup(self, name: str, awaitable) -> Optional[object]:
        try:
            return await awaitable
        except Exception:
            logger.exception(f"{name} failed during dispatch")
            return None

    @staticmethod
    def _display_name(user: Optional[UserInfo], fallback: str) -> str:
        return user.name if user else fallback

    @staticmethod
    def _confirmation_body(user: UserInfo, course_title: str, transaction_id: str) -> str:
        return (
            f"Hello {user.name},\n\n"
            f"your payment (transaction {transaction_id}) was received and your "
            f"enrollment in {course_title} is confirmed.\n\n"
            f"See you in class!"
        )
