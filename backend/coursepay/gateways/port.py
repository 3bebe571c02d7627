"""
Payment gateway port (abstract interface).

Contract every card-rail gateway adapter satisfies. The reconciliation core
never sees provider payloads: adapters translate them into SettlementEvents
after verifying their authenticity.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..models.payments import PaymentMethod
from ..models.settlement import SettlementEvent


@dataclass(frozen=True)
class IntentResult:
    """Result of creating a payment intent at the gateway."""

    gateway_reference_id: str
    gateway_status: str
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund attempt."""

    success: bool
    gateway_refund_id: Optional[str] = None
    gateway_status: Optional[str] = None
    failure_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Abstract card-rail payment gateway."""

    @abstractmethod
    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        method: PaymentMethod,
        external_transaction_id: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> IntentResult:
        """
        Create a payment intent. external_transaction_id doubles as the
        gateway idempotency key.

        Raises:
            GatewayError: Provider unreachable or request rejected
        """
        ...

    @abstractmethod
    async def retrieve_intent(
        self,
        gateway_reference_id: str,
        external_transaction_id: Optional[str] = None,
    ) -> Optional[SettlementEvent]:
        """
        Ask the gateway for the intent's current status.

        Args:
            gateway_reference_id: Provider intent id
            external_transaction_id: When given, the intent must have been
                created for this transaction

        Returns:
            A SettlementEvent for a decided intent, None while it is still in flight

        Raises:
            GatewayError: Provider unreachable or intent unknown
            ForeignConfirmationError: Intent belongs to another transaction
        """
        ...

    @abstractmethod
    async def create_refund(
        self,
        gateway_reference_id: str,
        amount_cents: int,
        reason: str,
    ) -> RefundResult:
        """Refund a settled intent."""
        ...

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature_header: str) -> Optional[SettlementEvent]:
        """
        Verify and translate a webhook delivery.

        Returns:
            A SettlementEvent, or None for event types that carry no settlement

        Raises:
            InvalidSignatureError: Signature header does not match the payload
        """
        ...
