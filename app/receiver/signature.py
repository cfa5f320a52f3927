"""
Webhook Signature
Shared-secret HMAC-SHA256 signing of the raw request body
(``X-Hub-Signature-256: sha256=<hex>``).
"""
import hashlib
import hmac
from typing import Optional

from app.core.constants import SIGNATURE_PREFIX


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: bytes, header_value: Optional[str]) -> bool:
    """Constant-time check. An empty secret never validates."""
    if not secret or not header_value:
        return False
    expected = sign_payload(secret, body)
    return hmac.compare_digest(expected, header_value.strip())
