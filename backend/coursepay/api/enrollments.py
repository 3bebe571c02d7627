"""
Enrollments API Endpoints

Checkout (admission + payment start), withdrawal and enrollment listing.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any, Literal
import logging

from ..models.api import CheckoutRequest, CheckoutResponse
from ..models.payments import EnrollmentRecord, EnrollmentStatus
from ..services import enrollment_store
from ..services.checkout_service import CheckoutService
from ..services.reconciliation import ReconciliationEngine
from .deps import get_checkout_service, get_engine, get_session

logger = logging.getLogger(__name__)

router = APIRouter()


class AdvanceEnrollmentRequest(BaseModel):
    status: Literal["active", "completed"]


@router.post("/checkout", response_model=CheckoutResponse, status_code=201)
async def checkout(
    request: CheckoutRequest,
    checkout_service: CheckoutService = Depends(get_checkout_service)
) -> CheckoutResponse:
    """
    Start a paid enrollment.

    Request Body:
        {
            "user_id": str,
            "course_id": str,
            "method": str,  # card, sepa_debit, bkash, bank_transfer, ...
            "transaction_id": str  # optional idempotency key
        }

    Returns:
        CheckoutResponse with client_secret for card rails or redirect_url
        for mobile banking

    Errors:
        404 course:not_found / user:not_found
        409 enrollment:course_full / enrollment:already_enrolled
        502 gateway:unavailable
    """
    logger.info(f"Checkout: user={request.user_id}, course={request.course_id}, method={request.method.value}")
    return await checkout_service.start_checkout(request)


@router.post("/{enrollment_id}/withdraw", response_model=EnrollmentRecord)
async def withdraw(
    enrollment_id: str,
    checkout_service: CheckoutService = Depends(get_checkout_service)
) -> EnrollmentRecord:
    """Withdraw before the course starts; frees the seat."""
    return await checkout_service.withdraw(enrollment_id)


@router.post("/{enrollment_id}/advance", response_model=EnrollmentRecord)
async def advance(
    enrollment_id: str,
    body: AdvanceEnrollmentRequest,
    engine: ReconciliationEngine = Depends(get_engine)
) -> EnrollmentRecord:
    """Move an enrollment to active (course running) or completed (course finished)."""
    return await engine.advance_enrollment(enrollment_id, EnrollmentStatus(body.status))


@router.get("/user/{user_id}")
async def list_user_enrollments(
    user_id: str,
    db: AsyncSession = Depends(get_session)
) -> Dict[str, Any]:
    enrollments = await enrollment_store.list_for_user(db, user_id)
    return {
        "user_id": user_id,
        "enrollments": enrollments,
        "count": len(enrollments)
    }
