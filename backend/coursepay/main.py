"""
CoursePay Backend - FastAPI Application

Payment-to-enrollment reconciliation service for the course platform.
Card payments (Stripe), mobile banking callbacks and manual verification all
settle through one reconciliation engine.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import Settings, settings
from .exceptions import CoursePayError
from .db.init_db import initialize_database, AsyncSessionLocal, engine as db_engine
from .gateways import build_gateway
from .gateways.callbacks import build_callback_adapters
from .gateways.manual import ManualVerificationAdapter
from .gateways.port import PaymentGateway
from .mocks.course_directory import InMemoryCourseDirectory
from .mocks.notification_sender import RecordingNotificationSender, RecordingEmailSender
from .mocks.user_directory import InMemoryUserDirectory
from .services.checkout_service import CheckoutService
from .services.dispatcher import SideEffectDispatcher
from .services.reconciliation import ReconciliationEngine
from .services.sweeper import start_sweeper, stop_sweeper
from .api.courses import router as courses_router
from .api.enrollments import router as enrollments_router
from .api.payments import router as payments_router
from .api.webhooks import router as webhooks_router


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def wire_app_state(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    app_settings: Settings,
    gateway: Optional[PaymentGateway] = None,
    course_directory: Optional[InMemoryCourseDirectory] = None,
    user_directory: Optional[InMemoryUserDirectory] = None
) -> None:
    """
    Build the service components and attach them to app.state.

    Collaborators default to the in-memory implementations; the catalog,
    profile and messaging services are owned by other parts of the platform.
    """
    course_directory = course_directory or InMemoryCourseDirectory()
    user_directory = user_directory or InMemoryUserDirectory()
    gateway = gateway or build_gateway(app_settings)
    callback_adapters = build_callback_adapters(app_settings)

    dispatcher = SideEffectDispatcher(
        courses=course_directory,
        users=user_directory,
        notifications=RecordingNotificationSender(),
        emails=RecordingEmailSender()
    )
    reconciliation = ReconciliationEngine(
        session_factory=session_factory,
        dispatcher=dispatcher,
        max_cas_attempts=app_settings.max_cas_attempts
    )

    app.state.session_factory = session_factory
    app.state.engine = reconciliation
    app.state.dispatcher = dispatcher
    app.state.gateway = gateway
    app.state.callback_adapters = callback_adapters
    app.state.manual_adapter = ManualVerificationAdapter(auto_verify=app_settings.auto_verify_manual_payments)
    app.state.course_directory = course_directory
    app.state.user_directory = user_directory
    app.state.checkout = CheckoutService(
        engine=reconciliation,
        gateway=gateway,
        callback_adapters=callback_adapters,
        courses=course_directory,
        users=user_directory
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: Initialize database, wire components, start the sweeper
    - Shutdown: Stop the sweeper, dispose the engine
    """
    # Startup
    logger.info("Starting CoursePay backend server...")
    logger.info(f"Demo mode: {settings.demo_mode}")

    try:
        await initialize_database()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    wire_app_state(app, AsyncSessionLocal, settings)

    if settings.sweeper_enabled:
        start_sweeper(
            app.state.engine,
            ttl_minutes=settings.pending_payment_ttl_minutes,
            interval_minutes=settings.sweep_interval_minutes
        )
        logger.info("Stale payment sweeper started")

    logger.info("Server startup complete")

    yield

    # Shutdown
    logger.info("Shutting down CoursePay backend server...")
    if settings.sweeper_enabled:
        stop_sweeper()
    await db_engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title="CoursePay API",
    description="Payment-to-enrollment reconciliation for the course platform",
    version="0.1.0",
    lifespan=lifespan,
)


# Configure CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CoursePayError)
async def coursepay_error_handler(request: Request, exc: CoursePayError):
    """
    Handle domain errors with the standard error body.

    The HTTP status comes from the exception class.
    """
    logger.warning(f"CoursePay error: {exc.error_code} - {exc.message}", extra={"details": exc.details})

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """
    Handle validation errors with user-friendly messages.

    Used for input validation failures not caught by Pydantic.
    """
    logger.warning(f"Validation error: {str(exc)}")

    return JSONResponse(
        status_code=400,
        content={
            "error_code": "validation_error",
            "message": str(exc),
            "details": {}
        }
    )


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    """
    Catch-all handler for unexpected errors.

    Logs full exception for debugging but returns generic message to client.
    """
    logger.error(f"Unexpected error: {str(exc)}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error_code": "internal_error",
            "message": "An unexpected error occurred",
            "details": {"error_type": type(exc).__name__} if settings.demo_mode else {}
        }
    )


# Health check endpoint
@app.get("/api/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Server status and version information
    """
    return {
        "status": "healthy",
        "version": "0.1.0",
        "demo_mode": settings.demo_mode,
    }


# Include API routers
app.include_router(enrollments_router, prefix="/api/enrollments", tags=["Enrollments"])
app.include_router(payments_router, prefix="/api/payments", tags=["Payments"])
app.include_router(webhooks_router, prefix="/api/webhooks", tags=["Webhooks"])
app.include_router(courses_router, prefix="/api/courses", tags=["Courses"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "coursepay.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.demo_mode,
        log_level=settings.log_level.lower()
    )
