"""HMAC signing and verification shared by inbound and outbound paths."""

import hashlib
import hmac
from typing import Optional

import stripe


def sign_payload(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def verify_stripe_signature(payload: str, sig_header: str, secret: str, tolerance: int = 300) -> bool:
    """Check a ``Stripe-Signature`` header with the Stripe SDK.

    A tolerance of 0 disables the timestamp age check.
    """
    try:
        stripe.WebhookSignature.verify_header(payload, sig_header or "", secret, tolerance=tolerance or None)
    except stripe.SignatureVerificationError:
        return False
    return True


def verify_paystack_signature(payload: str, sig_header: str, secret: str) -> bool:
    """Paystack signs the raw body with HMAC-SHA512 of the secret key."""
    if not sig_header:
        return False
    expected = hmac.new(secret.encode(), payload.encode(), hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, sig_header.strip())


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


def check_bearer(auth_header: Optional[str], expected_key: str) -> bool:
    """Validate an ``Authorization: Bearer <key>`` header against the configured key."""
    if not auth_header or not auth_header.startswith("Bearer "):
        return False
    raw_key = auth_header[len("Bearer "):]
    return hmac.compare_digest(hash_api_key(raw_key), hash_api_key(expected_key))


def truncate_utf8(text: Optional[str], limit: int) -> str:
    """Cut ``text`` to at most ``limit`` UTF-8 bytes without splitting a character."""
    if not text:
        return ""
    encoded = text.encode("utf-8")
    if len(encoded) <= limit:
        return text
    return encoded[:limit].decode("utf-8", errors="ignore")
