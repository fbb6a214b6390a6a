"""HMAC-SHA256 request signing shared by outbound calls and inbound webhooks."""

import hashlib
import hmac
from typing import Optional, Union


SIGNATURE_HEADER = "X-ESign-Signature"


def compute_signature(body: Union[str, bytes], secret: str) -> str:
    """Hex HMAC-SHA256 of the exact serialized body."""
    payload = body.encode("utf-8") if isinstance(body, str) else body
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: Optional[str]) -> bool:
    """Constant-time comparison that never matches an empty signature."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().lower().encode("utf-8"))
