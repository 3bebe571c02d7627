"""
SQLAlchemy ORM Models for CoursePay

Payment ledger, enrollment ledger and per-course capacity counter.
Uniqueness and status vocabularies are enforced in the schema, not only in code.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, CheckConstraint, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PaymentModel(Base):
    """
    ORM model for payments table.

    One row per payment attempt. external_transaction_id and
    gateway_reference_id are both unique idempotency keys.
    """
    __tablename__ = "payments"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    course_id = Column(String, nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="EUR")
    method = Column(String, nullable=False)
    external_transaction_id = Column(String, nullable=False, unique=True)
    gateway_reference_id = Column(String, unique=True)
    status = Column(String, nullable=False, default="pending", index=True)
    failure_reason = Column(String)
    provider_metadata = Column(Text)  # JSON blob
    settled_at = Column(DateTime)
    refunded_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'requires_action', 'completed', 'failed', 'canceled', 'refunded')",
            name="payment_status_check"
        ),
        CheckConstraint("amount_cents >= 0", name="payment_amount_check"),
    )


class EnrollmentModel(Base):
    """
    ORM model for enrollments table.

    At most one row per (user_id, course_id), ever. A new payment attempt
    re-points the existing row instead of inserting a second one.
    """
    __tablename__ = "enrollments"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    course_id = Column(String, nullable=False, index=True)
    payment_id = Column(String, ForeignKey("payments.id"), nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    confirmed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="enrollment_user_course_unique"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'active', 'completed', 'cancelled')",
            name="enrollment_status_check"
        ),
    )


class CourseCapacityModel(Base):
    """
    ORM model for course_capacity table.

    seats_taken is only ever changed by a +1/-1 UPDATE issued from the
    capacity ledger on enrollment confirmation or cancellation.
    """
    __tablename__ = "course_capacity"

    course_id = Column(String, primary_key=True)
    seats_taken = Column(Integer, nullable=False, default=0)
    seats_max = Column(Integer, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("seats_taken >= 0", name="seats_taken_non_negative"),
    )
