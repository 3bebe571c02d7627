"""
Signature Service for Gateway Payloads

HMAC-SHA256 signing and verification for:
- Mobile banking provider callbacks (X-Callback-Signature over canonical JSON)
- Stripe-format webhook signature headers produced by the fake gateway
"""
import hmac
import hashlib
import json
import time
from typing import Dict, Any, Optional


def create_canonical_json(data: Dict[str, Any]) -> str:
    """
    Create canonical JSON representation for signing.

    Ensures consistent serialization:
    - Sorted keys
    - No whitespace
    - UTF-8 encoding
    """
    return json.dumps(data, sort_keys=True, separators=(',', ':'))


def compute_hmac(secret_key: str, message: str) -> str:
    return hmac.new(
        secret_key.encode('utf-8'),
        message.encode('utf-8'),
        hashlib.sha256
    ).hexdigest()


def sign_callback(body: Dict[str, Any], secret_key: str) -> str:
    """
    Sign a provider callback body.

    Args:
        body: Callback fields as received in the POST body
        secret_key: Per-provider shared secret

    Returns:
        Hex HMAC-SHA256 of the canonical JSON body
    """
    return compute_hmac(secret_key, create_canonical_json(body))


def verify_callback_signature(body: Dict[str, Any], signature: Optional[str], secret_key: str) -> bool:
    """
    Verify a provider callback signature using constant-time comparison.

    Returns:
        True if signature valid, False otherwise (including a missing header)
    """
    if not signature:
        return False

    expected = sign_callback(body, secret_key)
    return hmac.compare_digest(expected, signature)


def sign_stripe_style_payload(payload: str, secret_key: str, timestamp: Optional[int] = None) -> str:
    """
    Build a Stripe-Signature header value ("t=<ts>,v1=<hmac>").

    The signed message is "<timestamp>.<payload>", matching what Stripe's
    SDK verifies, so the fake gateway's deliveries pass real verification.
    """
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_hmac(secret_key, f'{ts}.{payload}')}"
