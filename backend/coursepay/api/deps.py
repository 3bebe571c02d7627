"""
FastAPI dependencies.

Components are built once at startup (see main.wire_app_state) and stored on
app.state; these accessors hand them to the routers.
"""
from typing import AsyncGenerator, Dict
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..gateways.callbacks import CallbackAdapter
from ..gateways.manual import ManualVerificationAdapter
from ..gateways.port import PaymentGateway
from ..collaborators import CourseDirectory
from ..services.checkout_service import CheckoutService
from ..services.reconciliation import ReconciliationEngine


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_callback_adapters(request: Request) -> Dict[str, CallbackAdapter]:
    return request.app.state.callback_adapters


def get_manual_adapter(request: Request) -> ManualVerificationAdapter:
    return request.app.state.manual_adapter


def get_checkout_service(request: Request) -> CheckoutService:
    return request.app.state.checkout


def get_course_directory(request: Request) -> CourseDirectory:
    return request.app.state.course_directory


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Read-only session for query endpoints. Status writes go through the engine."""
    async with request.app.state.session_factory() as session:
        yield session
