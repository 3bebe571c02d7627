"""Shared fixtures: a fresh SQLite file per test and in-memory collaborators."""

from datetime import datetime, timedelta

import httpx
import pytest
import pytest_asyncio

from coursepay.config import Settings
from coursepay.db.init_db import build_engine, build_session_factory, create_schema
from coursepay.gateways.callbacks import build_callback_adapters
from coursepay.mocks.course_directory import InMemoryCourseDirectory
from coursepay.mocks.notification_sender import RecordingEmailSender, RecordingNotificationSender
from coursepay.mocks.payment_gateway import FakeGateway
from coursepay.mocks.user_directory import InMemoryUserDirectory
from coursepay.models.directory import CourseInfo, UserInfo
from coursepay.models.payments import AdmissionRequest, PaymentMethod
from coursepay.services import capacity_ledger, enrollment_store, payment_store
from coursepay.services.checkout_service import CheckoutService
from coursepay.services.dispatcher import SideEffectDispatcher
from coursepay.services.reconciliation import ReconciliationEngine

WEBHOOK_SECRET = "whsec_test_secret"
BKASH_SECRET = "bkash_test_secret"
NAGAD_SECRET = "nagad_test_secret"
SSLCOMMERZ_SECRET = "sslcommerz_test_secret"


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        demo_mode=True,
        database_path=str(tmp_path / "coursepay_test.db"),
        stripe_webhook_secret=WEBHOOK_SECRET,
        bkash_callback_secret=BKASH_SECRET,
        nagad_callback_secret=NAGAD_SECRET,
        sslcommerz_callback_secret=SSLCOMMERZ_SECRET,
        checkout_base_url="https://pay.test",
        sweeper_enabled=False,
        max_cas_attempts=5,
    )


@pytest_asyncio.fixture
async def db_engine(test_settings):
    engine = build_engine(test_settings.database_path)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def courses():
    start = datetime.utcnow() + timedelta(days=30)
    return InMemoryCourseDirectory([
        CourseInfo(
            course_id="C1",
            title="German B2 Evening",
            status="upcoming",
            start_date=start,
            seats_max=1,
            price_cents=42900,
            supervisor_id="sup_anna",
        ),
        CourseInfo(
            course_id="C10",
            title="German A1 Intensive",
            status="upcoming",
            start_date=start,
            seats_max=10,
            price_cents=34900,
        ),
        CourseInfo(
            course_id="C_RUNNING",
            title="German A2 (in progress)",
            status="ongoing",
            start_date=datetime.utcnow() - timedelta(days=3),
            seats_max=10,
            price_cents=29900,
        ),
    ])


@pytest.fixture
def users():
    return InMemoryUserDirectory([
        UserInfo(user_id="u1", email="u1@example.com", name="Lena Vogel"),
        UserInfo(user_id="u2", email="u2@example.com", name="Rahim Chowdhury"),
        UserInfo(user_id="u3", email="u3@example.com", name="Marta Kowalska"),
    ])


@pytest.fixture
def notifications():
    return RecordingNotificationSender()


@pytest.fixture
def emails():
    return RecordingEmailSender()


@pytest.fixture
def dispatcher(courses, users, notifications, emails):
    return SideEffectDispatcher(courses=courses, users=users, notifications=notifications, emails=emails)


@pytest.fixture
def engine(session_factory, dispatcher):
    return ReconciliationEngine(session_factory, dispatcher=dispatcher, max_cas_attempts=5)


@pytest.fixture
def fake_gateway():
    return FakeGateway(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def checkout(engine, fake_gateway, courses, users, test_settings):
    return CheckoutService(
        engine=engine,
        gateway=fake_gateway,
        callback_adapters=build_callback_adapters(test_settings),
        courses=courses,
        users=users,
    )


@pytest.fixture
def admit(engine, courses):
    """Create a pending payment/enrollment pair directly through the engine."""

    async def _admit(user_id, course_id, transaction_id, method=PaymentMethod.CARD):
        course = await courses.get_course(course_id)
        return await engine.admit(
            AdmissionRequest(
                user_id=user_id,
                course_id=course_id,
                method=method,
                external_transaction_id=transaction_id,
            ),
            course,
        )

    return _admit


@pytest.fixture
def inspect(session_factory):
    """Read helpers for assertions."""

    class Inspector:
        async def payment(self, transaction_id):
            async with session_factory() as db:
                return await payment_store.get_by_external_id(db, transaction_id)

        async def enrollment(self, user_id, course_id):
            async with session_factory() as db:
                return await enrollment_store.get_for_pair(db, user_id, course_id)

        async def user_enrollments(self, user_id):
            async with session_factory() as db:
                return await enrollment_store.list_for_user(db, user_id)

        async def capacity(self, course_id):
            async with session_factory() as db:
                return await capacity_ledger.get_snapshot(db, course_id)

        async def seat_holders(self, course_id):
            async with session_factory() as db:
                return await enrollment_store.count_seat_holders(db, course_id)

    return Inspector()


@pytest_asyncio.fixture
async def client(session_factory, test_settings, fake_gateway, courses, users):
    from coursepay.main import app, wire_app_state

    wire_app_state(
        app,
        session_factory,
        test_settings,
        gateway=fake_gateway,
        course_directory=courses,
        user_directory=users,
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
