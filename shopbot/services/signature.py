import hashlib
import hmac
from typing import Optional

SIGNATURE_HEADER = "x-hub-signature-256"
SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
    """Check a Meta webhook signature against the untouched request bytes."""
    if not secret or not signature_header:
        return False
    if not signature_header.startswith(SIGNATURE_PREFIX):
        return False

    provided = signature_header[len(SIGNATURE_PREFIX):].strip().lower()
    if not provided:
        return False

    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8", errors="replace"))
