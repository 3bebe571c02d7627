"""
Mobile banking callback adapters.

bKash, Nagad and SSLCommerz redirect the student to the provider and report
the result by POSTing a callback to /api/payments/callbacks/{provider}.
Each adapter:
- Verifies the X-Callback-Signature header (HMAC-SHA256 over canonical JSON)
- Maps the provider's status vocabulary onto a SettlementOutcome
- Builds the redirect URL handed to the client at checkout

Unknown statuses produce no event. Extra body fields are ignored.
"""
from abc import ABC
from typing import Any, Dict, Optional
from urllib.parse import urlencode
import logging

from ..config import Settings
from ..exceptions import InvalidSignatureError, UnknownProviderError
from ..models.payments import PaymentMethod
from ..models.settlement import SettlementEvent, SettlementOutcome
from ..services.signature_service import verify_callback_signature

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Callback-Signature"


class CallbackAdapter(ABC):
    """
    Base adapter for redirect-based providers.

    Subclasses declare which body fields carry the external transaction id,
    the provider reference and the status, plus the status mapping table.
    """

    provider: str
    transaction_field: str
    reference_field: str
    status_field: str = "status"
    status_outcomes: Dict[str, SettlementOutcome] = {}
    redirect_path: str

    def __init__(self, secret_key: str, base_url: str):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")

    def verify(self, body: Dict[str, Any], signature: Optional[str]) -> None:
        """
        Raises:
            InvalidSignatureError: Missing or mismatching signature
        """
        if not verify_callback_signature(body, signature, self.secret_key):
            logger.warning(f"Rejected {self.provider} callback with invalid signature")
            raise InvalidSignatureError(
                f"Invalid {self.provider} callback signature",
                details={"provider": self.provider}
            )

    def to_event(self, body: Dict[str, Any]) -> Optional[SettlementEvent]:
        """Translate a verified callback body. None for unknown statuses."""
        status = body.get(self.status_field)
        outcome = self.status_outcomes.get(status)
        if outcome is None:
            logger.info(f"Ignoring {self.provider} callback with status {status!r}")
            return None

        external_id = body.get(self.transaction_field)
        reference = body.get(self.reference_field)
        if not external_id and not reference:
            logger.warning(f"{self.provider} callback carries no transaction or reference id")
            return None

        return SettlementEvent(
            outcome=outcome,
            external_transaction_id=external_id,
            gateway_reference_id=reference,
            source=f"{self.provider}_callback",
            failure_reason=f"{self.provider}:{status}" if outcome != SettlementOutcome.SUCCEEDED else None,
            provider_metadata={"provider": self.provider, "provider_status": status}
        )

    def parse(self, body: Dict[str, Any], signature: Optional[str]) -> Optional[SettlementEvent]:
        self.verify(body, signature)
        return self.to_event(body)

    def redirect_url(self, external_transaction_id: str, amount_cents: int, currency: str) -> str:
        query = urlencode({
            "provider": self.provider,
            "transaction_id": external_transaction_id,
            "amount": f"{amount_cents / 100:.2f}",
            "currency": currency,
        })
        return f"{self.base_url}/{self.redirect_path}?{query}"


class BkashCallbackAdapter(CallbackAdapter):
    provider = "bkash"
    transaction_field = "trxID"
    reference_field = "paymentID"
    status_outcomes = {
        "success": SettlementOutcome.SUCCEEDED,
        "failure": SettlementOutcome.FAILED,
        "cancel": SettlementOutcome.CANCELED,
    }
    redirect_path = "checkout/bkash"


class NagadCallbackAdapter(CallbackAdapter):
    provider = "nagad"
    transaction_field = "order_id"
    reference_field = "payment_ref_id"
    status_outcomes = {
        "Success": SettlementOutcome.SUCCEEDED,
        "Failed": SettlementOutcome.FAILED,
        "Aborted": SettlementOutcome.CANCELED,
        "Cancelled": SettlementOutcome.CANCELED,
    }
    redirect_path = "checkout/nagad"


class SSLCommerzCallbackAdapter(CallbackAdapter):
    provider = "sslcommerz"
    transaction_field = "tran_id"
    reference_field = "val_id"
    status_outcomes = {
        "VALID": SettlementOutcome.SUCCEEDED,
        "VALIDATED": SettlementOutcome.SUCCEEDED,
        "FAILED": SettlementOutcome.FAILED,
        "CANCELLED": SettlementOutcome.CANCELED,
    }
    redirect_path = "checkout/sslcommerz"


def build_callback_adapters(settings: Settings) -> Dict[str, CallbackAdapter]:
    """Registry keyed by provider name, which is also the PaymentMethod value."""
    return {
        PaymentMethod.BKASH.value: BkashCallbackAdapter(settings.bkash_callback_secret, settings.checkout_base_url),
        PaymentMethod.NAGAD.value: NagadCallbackAdapter(settings.nagad_callback_secret, settings.checkout_base_url),
        PaymentMethod.SSLCOMMERZ.value: SSLCommerzCallbackAdapter(
            settings.sslcommerz_callback_secret, settings.checkout_base_url
        ),
    }


def get_callback_adapter(adapters: Dict[str, CallbackAdapter], provider: str) -> CallbackAdapter:
    adapter = adapters.get(provider)
    if adapter is None:
        raise UnknownProviderError(
            f"Unknown callback provider: {provider}",
            details={"supported": sorted(adapters)}
        )
    return adapter
