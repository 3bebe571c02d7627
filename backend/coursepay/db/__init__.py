"""
Database package for CoursePay.

Exports database initialization, models, and session management.
"""
from .init_db import (
    initialize_database,
    get_db,
    get_async_session,
    build_engine,
    build_session_factory,
    create_schema,
)
from .models import (
    Base,
    PaymentModel,
    EnrollmentModel,
    CourseCapacityModel,
)

__all__ = [
    "initialize_database",
    "get_db",
    "get_async_session",
    "build_engine",
    "build_session_factory",
    "create_schema",
    "Base",
    "PaymentModel",
    "EnrollmentModel",
    "CourseCapacityModel",
]
