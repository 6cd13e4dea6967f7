"""Webhook signature verification.

Every check here fails closed: a missing secret, a missing header or a header that
does not parse is treated exactly like a wrong signature.
"""

import base64
import hashlib
import hmac
import logging

from billing.errors import AuthenticationFailure

logger = logging.getLogger(__name__)


def compute_hmac_sha256(raw_body: bytes, shared_secret: str) -> bytes:
    """Raw HMAC-SHA256 digest of the request body."""
    return hmac.new(shared_secret.encode(), raw_body, hashlib.sha256).digest()


def parse_signature_header(signature_header: str) -> list[str]:
    """Split a ``key=value,key=value`` header into its candidate signature values.

    Values may themselves contain ``=`` (base64 padding), so only the first ``=``
    separates key from value. A bare value with no key is accepted as a candidate.
    """
    candidates = []
    for part in signature_header.split(","):
        part = part.strip()
        if not part:
            continue
        key, sep, value = part.partition("=")
        if sep and key.strip() and value.strip():
            candidates.append(value.strip())
        elif not sep:
            candidates.append(part)
    return candidates


def verify_hmac_signature(raw_body: bytes, signature_header: str | None, shared_secret: str | None) -> bool:
    """Return True if any candidate in the header matches HMAC-SHA256(secret, body).

    Candidates are compared against both the base64 and the hex encoding of the
    digest using constant-time comparison.
    """
    if not shared_secret or not signature_header:
        return False

    candidates = parse_signature_header(signature_header)
    if not candidates:
        return False

    digest = compute_hmac_sha256(raw_body, shared_secret)
    expected = (
        base64.b64encode(digest),
        digest.hex().encode(),
    )

    matched = False
    for candidate in candidates:
        encoded = candidate.encode()
        for value in expected:
            # Evaluate every comparison so timing does not depend on which one matched
            matched |= hmac.compare_digest(encoded, value)
    return matched


def require_hmac_signature(raw_body: bytes, signature_header: str | None, shared_secret: str | None) -> None:
    """Raise AuthenticationFailure unless the body carries a valid HMAC signature."""
    if not shared_secret:
        logger.error("Webhook HMAC secret is not configured; rejecting notification")
        raise AuthenticationFailure()
    if not verify_hmac_signature(raw_body, signature_header, shared_secret):
        raise AuthenticationFailure()
