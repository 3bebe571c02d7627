"""
Stale Payment Sweeper

Expires payments that never settled. An expired payment is settled as
failed through the reconciliation engine like any other signal, so its
pending enrollment is cancelled by the same rules and nothing is written
on the side.
"""
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from ..exceptions import CoursePayError
from ..models.settlement import SettlementEvent, SettlementOutcome
from . import payment_store
from .reconciliation import ReconciliationEngine
from .scheduler import scheduler

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "expire_stale_payments"


async def expire_stale_payments(
    engine: ReconciliationEngine,
    ttl_minutes: int,
    now: Optional[datetime] = None,
    batch_size: int = 100
) -> List[str]:
    """
    Settle every in-flight payment older than the TTL as failed.

    Args:
        engine: Reconciliation engine to route the failures through
        ttl_minutes: Age after which a pending/processing/requires_action payment expires
        now: Reference time (tests)
        batch_size: Maximum payments handled per sweep

    Returns:
        External transaction ids this sweep expired
    """
    cutoff = (now or datetime.utcnow()) - timedelta(minutes=ttl_minutes)

    async with engine.session_factory() as db:
        stale = await payment_store.list_stale(db, cutoff, limit=batch_size)

    expired: List[str] = []
    for payment in stale:
        try:
            result = await engine.apply_settlement(SettlementEvent(
                outcome=SettlementOutcome.FAILED,
                external_transaction_id=payment.external_transaction_id,
                source="sweeper",
                failure_reason="expired",
                provider_metadata={"expired_after_minutes": ttl_minutes}
            ))
        except CoursePayError as e:
            logger.error(f"Sweeper could not expire {payment.external_transaction_id}: {e.message}")
            continue

        if not result.already_applied:
            expired.append(payment.external_transaction_id)
            logger.info(f"Expired stale payment {payment.external_transaction_id} (created {payment.created_at})")

    if stale:
        logger.info(f"Sweep finished: {len(expired)} of {len(stale)} stale payments expired")
    return expired


def start_sweeper(engine: ReconciliationEngine, ttl_minutes: int, interval_minutes: float) -> None:
    """Register the sweep job and start the scheduler."""
    scheduler.add_interval_job(
        SWEEP_JOB_ID,
        expire_stale_payments,
        interval_minutes,
        engine=engine,
        ttl_minutes=ttl_minutes
    )
    scheduler.start()


def stop_sweeper() -> None:
    scheduler.remove_job(SWEEP_JOB_ID)
    scheduler.shutdown(wait=False)
