"""
Signature checks for inbound callbacks.

- Queue deliveries carry an `Upstash-Signature` header: an HS256 JWT signed
  with the current or next signing key, whose `body` claim is the base64url
  SHA-256 of the raw request body.
- Payment webhooks carry `X-Signature`: hex HMAC-SHA256 of the raw body.
"""

import base64
import hashlib
import hmac
import logging
from typing import Optional

from jose import JWTError, jwt

logger = logging.getLogger(__name__)

QSTASH_ISSUER = "Upstash"


class SignatureError(Exception):
    """The request signature is missing or invalid."""


def body_digest(body: bytes) -> str:
    """base64url(sha256(body)) without padding."""
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode().rstrip("=")


def _verify_with_key(token: str, key: str, body: bytes, url: Optional[str]) -> dict:
    claims = jwt.decode(
        token,
        key,
        algorithms=["HS256"],
        issuer=QSTASH_ISSUER,
        subject=url,
        options={"verify_aud": False},
    )
    if (claims.get("body") or "").rstrip("=") != body_digest(body):
        raise SignatureError("Body hash mismatch")
    return claims


def verify_queue_signature(
    signature: Optional[str],
    body: bytes,
    url: Optional[str],
    current_key: str,
    next_key: str,
) -> dict:
    """Return the token claims, trying the current key first, then the next one."""
    if not signature:
        raise SignatureError("Missing signature")

    keys = [k for k in (current_key, next_key) if k]
    if not keys:
        raise SignatureError("No signing keys configured")

    last_error: Optional[Exception] = None
    for key in keys:
        try:
            return _verify_with_key(signature, key, body, url)
        except (JWTError, SignatureError) as e:
            last_error = e
    logger.warning(f"[Signature] Queue signature rejected: {last_error}")
    raise SignatureError(str(last_error))


def webhook_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(signature: Optional[str], body: bytes, secret: str) -> None:
    if not secret:
        raise SignatureError("Webhook secret is not configured")
    if not signature or not hmac.compare_digest(webhook_signature(body, secret), signature):
        raise SignatureError("Invalid webhook signature")
