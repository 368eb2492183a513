"""
Webhook signature checks.

Both functions take the raw request body exactly as received. Parsing and
re-serializing JSON changes the bytes and therefore the digest.
"""
import hashlib
import hmac
import logging

import stripe

logger = logging.getLogger(__name__)


def compute_hmac_sha512(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_hmac_signature(raw_body: bytes, signature: str | None, secret: str | None) -> bool:
    """Paystack `x-paystack-signature`: hex HMAC-SHA512 of the body keyed by the secret key.

    Fails closed when the secret or the signature is missing.
    """
    if not secret or not signature:
        return False
    expected = compute_hmac_sha512(raw_body, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def verify_stripe_signature(
    raw_body: bytes,
    header: str | None,
    secret: str | None,
    tolerance: int = 300,
) -> bool:
    """`Stripe-Signature` header (t=...,v1=...) checked with the Stripe SDK."""
    if not secret or not header:
        return False
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        return False
    try:
        stripe.WebhookSignature.verify_header(payload, header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning("stripe_signature_invalid", extra={"error": str(e)})
        return False
    return True
