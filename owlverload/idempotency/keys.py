"""Idempotency key derivation and body fingerprinting.

A client-supplied Idempotency-Key header wins. Without one, the key is
synthesized from method, path and body so that a blind retry of the same
request still lands on the same slot.
"""

from __future__ import annotations

import hashlib
from collections.abc import Mapping

IDEMPOTENCY_HEADER = "Idempotency-Key"
MAX_KEY_BYTES = 256


class BadIdempotencyKey(ValueError):
    """Raised when a client-supplied Idempotency-Key is unusable."""


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def fingerprint(body: bytes) -> str:
    """Lowercase hex SHA-256 of the raw request body (empty body allowed)."""
    return sha256_hex(body)


def validate_key(raw: str) -> str:
    """Trim and check a client key: at most 256 bytes of printable ASCII."""
    key = raw.strip()
    if not key:
        raise BadIdempotencyKey("Idempotency-Key must not be empty")
    if len(key.encode("utf-8")) > MAX_KEY_BYTES:
        raise BadIdempotencyKey(f"Idempotency-Key exceeds {MAX_KEY_BYTES} bytes")
    if any(not (0x20 <= ord(ch) <= 0x7E) for ch in key):
        raise BadIdempotencyKey("Idempotency-Key must be printable ASCII")
    return key


def synthesize_key(method: str, path: str, body: bytes) -> str:
    base = method.upper().encode("ascii") + b"|" + path.encode("utf-8") + b"|" + body
    return sha256_hex(base)


def derive_key(
    method: str,
    path: str,
    headers: Mapping[str, str],
    body: bytes,
) -> str:
    """Return the idempotency key for a request.

    Header lookup goes through the mapping as given, so pass a
    case-insensitive mapping (Starlette's Headers) for real requests.
    A blank header is treated as absent.

    Raises:
        BadIdempotencyKey: the header is present but too long or not printable ASCII.
    """
    raw = headers.get(IDEMPOTENCY_HEADER)
    if raw is not None and raw.strip():
        return validate_key(raw)
    return synthesize_key(method, path, body)
