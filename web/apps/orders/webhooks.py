"""Signature check for provider webhooks."""

import hashlib
import hmac

from .errors import InvalidSignature

SIGNATURE_HEADER = "X-Webhook-Signature"


def sign(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> None:
    """Raise ``InvalidSignature`` unless ``signature`` matches ``body``.

    An empty ``secret`` disables the check.
    """
    if not secret:
        return
    if not signature or not hmac.compare_digest(sign(secret, body), signature.strip().lower()):
        raise InvalidSignature()
