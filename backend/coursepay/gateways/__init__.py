"""
Payment gateway factory.

build_gateway() picks the card-rail implementation:
- FakeGateway in demo mode (no external calls)
- StripeGateway otherwise
"""
import logging

from ..config import Settings
from .port import PaymentGateway, IntentResult, RefundResult

logger = logging.getLogger(__name__)


def build_gateway(settings: Settings) -> PaymentGateway:
    if settings.demo_mode:
        from ..mocks.payment_gateway import FakeGateway

        logger.info("Demo mode: using in-process fake payment gateway")
        return FakeGateway(
            webhook_secret=settings.stripe_webhook_secret,
            tolerance_seconds=settings.webhook_tolerance_seconds
        )

    from .stripe_adapter import StripeGateway

    return StripeGateway(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds
    )


__all__ = ["PaymentGateway", "IntentResult", "RefundResult", "build_gateway"]
