"""Redis-backed idempotency slot store.

Security contract:
- Key pattern: idem:{key} (one hash per key, see scripts.py for fields)
- acquire() is the only writer of PROCESSING; complete() the only writer of DONE
- A DONE slot is never rewritten before its TTL expires
- Every store call is bounded by a timeout; failures raise StoreUnavailableError
  and the caller decides between fail-open and fail-closed
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
import threading
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from owlverload.idempotency.config import (
    DEFAULT_STORE_TIMEOUT_MS,
    GatewaySettings,
    IdempotencyTTLs,
    get_ttls,
)
from owlverload.idempotency.scripts import ScriptEngine

logger = logging.getLogger(__name__)

_REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

KEY_PREFIX = "idem:"


def new_token() -> str:
    """Fresh owner token for an acquire."""
    return uuid.uuid4().hex


class StoreUnavailableError(RuntimeError):
    """The key-value store could not be reached or returned garbage."""


class AcquireState(str, Enum):
    """Outcome of an acquire attempt."""

    FIRST = "FIRST"  # slot created, caller must run the handler
    IN_FLIGHT = "IN_FLIGHT"  # another worker holds the slot
    DONE = "DONE"  # cached response available
    MISMATCH = "MISMATCH"  # same key, different body


@dataclass
class AcquireResult:
    """Acquire outcome. status/body/headers are set only for DONE, token only for FIRST."""

    state: AcquireState
    status: int | None = None
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    token: str | None = None


class IdemStore:
    """Slot store: acquire, complete and clear idempotency keys."""

    def __init__(
        self,
        client: Any,
        ttls: IdempotencyTTLs | None = None,
        *,
        prefix: str = KEY_PREFIX,
        timeout_ms: int = DEFAULT_STORE_TIMEOUT_MS,
    ):
        self._client = client
        self._scripts = ScriptEngine(client)
        self._ttls = ttls
        self._prefix = prefix
        self._timeout_s = timeout_ms / 1000.0

    @property
    def ttls(self) -> IdempotencyTTLs:
        return self._ttls or get_ttls()

    @property
    def timeout_ms(self) -> int:
        return round(self._timeout_s * 1000)

    @property
    def prefix(self) -> str:
        return self._prefix

    def with_prefix(self, prefix: str) -> "IdemStore":
        """Same client, TTLs and timeout under another key namespace."""
        return IdemStore(
            self._client,
            self._ttls,
            prefix=prefix,
            timeout_ms=self.timeout_ms,
        )

    def slot_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def _call(self, op: str, key: str, coro: Any) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout_s)
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(f"{op} timed out for {key}") from e
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(f"{op} failed for {key}: {e}") from e

    async def acquire(
        self, key: str, body_hash: str, token: str | None = None
    ) -> AcquireResult:
        """Atomically claim the slot for key, or report why it cannot be claimed.

        token identifies the claim; pass one from new_token() to be able to
        release() the slot even when this call fails.
        """
        token = token or new_token()
        reply = await self._call(
            "acquire",
            key,
            self._scripts.acquire(
                self.slot_key(key),
                body_hash,
                int(time.time() * 1000),
                token,
                self.ttls.processing_ms,
            ),
        )
        try:
            state = AcquireState(reply[0])
        except (IndexError, ValueError) as e:
            raise StoreUnavailableError(f"Unexpected acquire reply for {key}: {reply!r}") from e

        if state is AcquireState.FIRST:
            return AcquireResult(state=state, token=token)
        if state is not AcquireState.DONE:
            return AcquireResult(state=state)

        try:
            status = int(reply[1])
            body = base64.b64decode(reply[2], validate=True)
            headers = json.loads(reply[3]) if reply[3] else {}
        except (IndexError, ValueError, binascii.Error) as e:
            logger.warning("Corrupt DONE slot for %s, discarding it", key)
            try:
                await self.clear(key)
            except StoreUnavailableError:
                logger.warning("Could not discard corrupt slot for %s", key, exc_info=True)
            raise StoreUnavailableError(f"Corrupt DONE slot for {key}") from e
        return AcquireResult(state=state, status=status, body=body, headers=headers)

    async def complete(
        self,
        key: str,
        status: int,
        body: bytes,
        headers: Mapping[str, str] | None = None,
        token: str | None = None,
    ) -> bool:
        """Turn the PROCESSING slot into DONE with the captured response.

        A missing or already-DONE slot (or one re-acquired by another owner when
        token is given) is left untouched and False is returned.
        """
        completed = await self._call(
            "complete",
            key,
            self._scripts.complete(
                self.slot_key(key),
                status,
                base64.b64encode(body).decode("ascii"),
                json.dumps(dict(headers or {}), sort_keys=True),
                self.ttls.done_ms,
                owner=token or "",
            ),
        )
        if not completed:
            logger.info("Idempotency slot for %s no longer processing, completion skipped", key)
        return completed

    async def clear(self, key: str) -> None:
        """Delete the slot unconditionally."""
        await self._call("clear", key, self._client.delete(self.slot_key(key)))

    async def release(self, key: str, token: str) -> bool:
        """Delete the slot only if it is still PROCESSING under token."""
        return await self._call(
            "release", key, self._scripts.release(self.slot_key(key), token)
        )


# Module-level singletons
_redis: Any = None
_stores: dict[int, IdemStore] = {}
_lock = threading.Lock()


def get_redis() -> Any:
    """Get or create the shared asyncio Redis client."""
    global _redis
    if _redis is None:
        with _lock:
            if _redis is None:
                _redis = redis.from_url(_REDIS_URL, decode_responses=True)
    return _redis


def get_idem_store(timeout_ms: int | None = None) -> IdemStore:
    """Get or create the shared IdemStore for a store timeout.

    Without timeout_ms the IDEM_STORE_TIMEOUT_MS setting is used.
    """
    if timeout_ms is None:
        timeout_ms = GatewaySettings.from_env().store_timeout_ms
    store = _stores.get(timeout_ms)
    if store is None:
        client = get_redis()
        with _lock:
            store = _stores.get(timeout_ms)
            if store is None:
                store = _stores[timeout_ms] = IdemStore(client, timeout_ms=timeout_ms)
    return store


async def close_redis() -> None:
    """Close the shared client and forget the singletons."""
    global _redis
    with _lock:
        client, _redis = _redis, None
        _stores.clear()
    if client is not None:
        await client.aclose()
