"""Idempotency gateway configuration.

TTL contract:
- processing TTL bounds the in-flight window (a crashed worker frees the key)
- done TTL bounds the replay window (retries inside it get the cached answer)
- Both are resolved once from the environment and cached for the process
- Non-integer or non-positive values fall back to defaults with one warning
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

DEFAULT_PROCESSING_TTL_MS = 30_000  # 30s
DEFAULT_DONE_TTL_MS = 86_400_000  # 24h

DEFAULT_MAX_BODY_BYTES = 8 * 1024 * 1024  # 8 MiB
DEFAULT_CAPTURE_MAX_BYTES = 1024 * 1024  # 1 MiB
DEFAULT_RETRY_AFTER_S = 3
DEFAULT_STORE_TIMEOUT_MS = 2_000


@dataclass(frozen=True)
class IdempotencyTTLs:
    """Slot lifetimes in milliseconds."""

    processing_ms: int = DEFAULT_PROCESSING_TTL_MS
    done_ms: int = DEFAULT_DONE_TTL_MS


_ttls: IdempotencyTTLs | None = None
_ttls_lock = threading.Lock()


def _positive_int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r (not an integer), using default %d", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Invalid %s=%r (must be positive), using default %d", name, raw, default)
        return default
    return value


def get_ttls() -> IdempotencyTTLs:
    """Return the process-wide TTLs, reading the environment on first use."""
    global _ttls
    if _ttls is not None:
        return _ttls
    with _ttls_lock:
        if _ttls is None:
            _ttls = IdempotencyTTLs(
                processing_ms=_positive_int_env(
                    "IDEM_PROCESSING_TTL_MS", DEFAULT_PROCESSING_TTL_MS
                ),
                done_ms=_positive_int_env("IDEM_DONE_TTL_MS", DEFAULT_DONE_TTL_MS),
            )
            logger.debug(
                "Idempotency TTLs resolved: processing=%dms done=%dms",
                _ttls.processing_ms,
                _ttls.done_ms,
            )
        return _ttls


def reset_ttls() -> None:
    """Forget the cached TTLs so the next get_ttls() re-reads the environment."""
    global _ttls
    with _ttls_lock:
        _ttls = None


class FailMode(str, Enum):
    """What the gateway does when the store cannot be reached."""

    OPEN = "open"  # serve the request without duplicate protection
    CLOSED = "closed"  # refuse with 503


@dataclass(frozen=True)
class GatewaySettings:
    """Request limits and failure policy for the idempotency gateway."""

    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    capture_max_bytes: int = DEFAULT_CAPTURE_MAX_BYTES
    fail_mode: FailMode = FailMode.OPEN
    retry_after_s: int = DEFAULT_RETRY_AFTER_S
    store_timeout_ms: int = DEFAULT_STORE_TIMEOUT_MS

    @property
    def fail_closed(self) -> bool:
        return self.fail_mode is FailMode.CLOSED

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        """Build settings from IDEM_* environment variables."""
        raw_mode = os.environ.get("IDEM_FAIL_MODE", FailMode.OPEN.value).strip().lower()
        try:
            fail_mode = FailMode(raw_mode)
        except ValueError:
            logger.warning("Invalid IDEM_FAIL_MODE=%r, using 'open'", raw_mode)
            fail_mode = FailMode.OPEN

        return cls(
            max_body_bytes=_positive_int_env("IDEM_MAX_BODY_BYTES", DEFAULT_MAX_BODY_BYTES),
            capture_max_bytes=_positive_int_env(
                "IDEM_CAPTURE_MAX_BYTES", DEFAULT_CAPTURE_MAX_BYTES
            ),
            fail_mode=fail_mode,
            retry_after_s=_positive_int_env("IDEM_RETRY_AFTER_S", DEFAULT_RETRY_AFTER_S),
            store_timeout_ms=_positive_int_env(
                "IDEM_STORE_TIMEOUT_MS", DEFAULT_STORE_TIMEOUT_MS
            ),
        )
