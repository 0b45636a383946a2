"""LINE webhook signature: base64(HMAC-SHA256(channel_secret, raw_body))."""

import base64
import hashlib
import hmac
from typing import Optional


def compute_signature(body: bytes, channel_secret: str) -> str:
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_signature(body: bytes, signature: Optional[str], channel_secret: str) -> bool:
    """Constant-time comparison. An empty secret or missing header never verifies."""
    if not channel_secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(body, channel_secret), signature)
