"""Idempotent mutation gateway.

Public API:
- IdempotencyMiddleware / install_idempotency_middleware: at-most-once POST/PUT/DELETE
- IdemStore: Redis slot store (acquire, complete, clear)
- idempotent_endpoint: strict per-route variant that requires Idempotency-Key
- derive_key / fingerprint: key derivation and body hashing
"""

from __future__ import annotations

from owlverload.idempotency.capture import ResponseCapture
from owlverload.idempotency.config import (
    FailMode,
    GatewaySettings,
    IdempotencyTTLs,
    get_ttls,
    reset_ttls,
)
from owlverload.idempotency.handler import idempotent_endpoint
from owlverload.idempotency.keys import (
    IDEMPOTENCY_HEADER,
    BadIdempotencyKey,
    derive_key,
    fingerprint,
)
from owlverload.idempotency.middleware import (
    IdempotencyMiddleware,
    install_idempotency_middleware,
)
from owlverload.idempotency.store import (
    AcquireResult,
    AcquireState,
    IdemStore,
    StoreUnavailableError,
    close_redis,
    get_idem_store,
    get_redis,
    new_token,
)

__all__ = [
    "IDEMPOTENCY_HEADER",
    "AcquireResult",
    "AcquireState",
    "BadIdempotencyKey",
    "FailMode",
    "GatewaySettings",
    "IdemStore",
    "IdempotencyMiddleware",
    "IdempotencyTTLs",
    "ResponseCapture",
    "StoreUnavailableError",
    "close_redis",
    "derive_key",
    "fingerprint",
    "get_idem_store",
    "get_redis",
    "get_ttls",
    "idempotent_endpoint",
    "install_idempotency_middleware",
    "new_token",
    "reset_ttls",
]
