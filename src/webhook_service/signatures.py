"""HMAC-SHA256 signing of webhook bodies."""
from __future__ import annotations

import hmac
import secrets
from hashlib import sha256

SIGNATURE_PREFIX = "sha256="


def generate_webhook_secret() -> str:
    """Random 32-byte secret, hex encoded (64 chars)."""
    return secrets.token_hex(32)


def _as_bytes(payload: bytes | str) -> bytes:
    return payload.encode("utf-8") if isinstance(payload, str) else payload


def create_webhook_signature(payload: bytes | str, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact body bytes."""
    return hmac.new(secret.encode("utf-8"), _as_bytes(payload), sha256).hexdigest()


def signature_header_value(payload: bytes | str, secret: str) -> str:
    return f"{SIGNATURE_PREFIX}{create_webhook_signature(payload, secret)}"


def verify_webhook_signature(payload: bytes | str, secret: str, header_value: str | None) -> bool:
    """Check a received ``sha256=<hex>`` (or bare hex) header in constant time.

    Intended for receivers and for tests; the dispatcher only signs.
    """
    if not header_value:
        return False
    received = header_value.strip()
    if received.startswith(SIGNATURE_PREFIX):
        received = received[len(SIGNATURE_PREFIX):]
    expected = create_webhook_signature(payload, secret)
    # bytes so that non-ASCII garbage compares unequal instead of raising
    return hmac.compare_digest(
        expected.encode("ascii"), received.lower().encode("utf-8", "replace")
    )
