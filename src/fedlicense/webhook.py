"""Lemon Squeezy webhook signature verification.

LS signs the raw request body with HMAC-SHA256 using the webhook secret and
sends the hex digest in ``X-Signature``. Verification must run on the exact
bytes received; re-serializing parsed JSON can change them.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

from fedlicense.errors import InvalidSignature

logger = logging.getLogger("fedlicense.webhook")

_PREFIX = "sha256="


def _extract_token(signature_header: str | None) -> str:
    token = (signature_header or "").strip()
    if token[: len(_PREFIX)].lower() == _PREFIX:
        token = token[len(_PREFIX) :].strip()
    return token


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str) -> bool:
    """Return True if `signature_header` is HMAC-SHA256(secret, raw_body).

    The header may carry a ``sha256=`` prefix and a hex (any case) or base64
    digest. Both comparisons are constant-time.
    """
    if not secret:
        return False
    token = _extract_token(signature_header)
    if not token:
        return False

    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    expected_hex = digest.hex().encode("ascii")
    expected_b64 = base64.b64encode(digest)
    actual = token.encode("utf-8")

    hex_ok = hmac.compare_digest(expected_hex, actual.lower())
    b64_ok = hmac.compare_digest(expected_b64, actual)
    return hex_ok or b64_ok


def require_signature(raw_body: bytes, signature_header: str | None, secret: str) -> None:
    """Raise InvalidSignature unless the body matches the header."""
    if verify_signature(raw_body, signature_header, secret):
        return
    token = _extract_token(signature_header)
    # Safe diagnostics only: lengths and a short prefix, never the digest or body
    logger.warning(
        "Invalid webhook signature (header_prefix=%r token_len=%d body_len=%d)",
        (signature_header or "")[:12],
        len(token),
        len(raw_body),
    )
    raise InvalidSignature("Webhook signature mismatch")
