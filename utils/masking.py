"""
Masking helpers — raw digits never leave the IVR handler unmasked.
"""
from __future__ import annotations

import hashlib
import hmac


def mask_digits(value: str, style: str = "full") -> str:
    """
    Mask a captured digit string for storage and display.

        mask_digits("123456")                  → "••••••"
        mask_digits("4111111111111111", "last4") → "••••••••••••1111"
    """
    if not value:
        return ""
    if style == "last4" and len(value) > 4:
        return "•" * (len(value) - 4) + value[-4:]
    return "•" * len(value)


def mask_phone(number: str) -> str:
    """Keep the country prefix and last two digits: +14155550123 → +1••••••••23."""
    if not number:
        return ""
    if len(number) <= 4:
        return number
    head = 2 if number.startswith("+") else 1
    return number[:head] + "•" * (len(number) - head - 2) + number[-2:]


def digest_value(value: str) -> str:
    """SHA-256 hex digest used to store expected values without the plaintext."""
    return hashlib.sha256(value.encode()).hexdigest()


def matches_digest(value: str, digest: str) -> bool:
    return hmac.compare_digest(digest_value(value), digest)
