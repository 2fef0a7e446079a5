import hashlib
import hmac
from typing import Optional


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Razorpay webhook check: hex(HMAC_SHA256(secret, raw_body)) == X-Razorpay-Signature.

    raw_body must be the bytes read off the wire, before any JSON parsing.
    Never raises; any failure (no secret, no header, non-bytes body) is False.
    """
    try:
        if not secret or not signature:
            return False
        if not isinstance(raw_body, (bytes, bytearray)):
            return False
        expected = hmac.new(secret.encode("utf-8"), bytes(raw_body), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip())
    except Exception:
        return False
