"""
Manual verification adapter.

Backs the generic verify call used by bank transfers and PayPal, where an
operator (or an upstream system) reports the outcome directly.
"""
from typing import Any, Dict
import logging

from ..models.settlement import SettlementEvent, SettlementOutcome

logger = logging.getLogger(__name__)


class ManualVerificationAdapter:
    """
    Args:
        auto_verify: Treat every verify call as successful (demo setups)
    """

    def __init__(self, auto_verify: bool = False):
        self.auto_verify = auto_verify

    def to_event(self, transaction_id: str, gateway_data: Dict[str, Any]) -> SettlementEvent:
        verified = self.auto_verify or gateway_data.get("verified") is True
        outcome = SettlementOutcome.SUCCEEDED if verified else SettlementOutcome.FAILED

        if not verified:
            logger.info(f"Manual verification for {transaction_id} not confirmed; settling as failed")

        return SettlementEvent(
            outcome=outcome,
            external_transaction_id=transaction_id,
            gateway_reference_id=gateway_data.get("payment_gateway_id"),
            source="generic_verify",
            failure_reason=None if verified else gateway_data.get("reason", "verification_failed"),
            provider_metadata={k: v for k, v in gateway_data.items() if k not in ("verified", "payment_gateway_id")}
        )
