"""Idempotency gateway middleware for FastAPI.

Flow for POST/PUT/DELETE:
1. Read and keep the body (downstream handlers still see it)
2. Derive the key (Idempotency-Key header or hash of method|path|body)
3. Atomically acquire the slot: FIRST, IN_FLIGHT, DONE or MISMATCH
4. FIRST runs the handler and completes the slot on 2xx, clears it otherwise
5. IN_FLIGHT, DONE and MISMATCH are answered here without calling the handler

If Redis is down the request is served without protection (fail-open) unless
the gateway is configured fail-closed, in which case it answers 503. Either
way a slot the failed acquire may have left behind is released by owner token.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from owlverload.idempotency.capture import ResponseCapture
from owlverload.idempotency.config import GatewaySettings
from owlverload.idempotency.keys import BadIdempotencyKey, derive_key, fingerprint
from owlverload.idempotency.store import (
    AcquireResult,
    AcquireState,
    IdemStore,
    StoreUnavailableError,
    get_idem_store,
    new_token,
)
from owlverload.responses import service_error

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "DELETE"})

MSG_IN_FLIGHT = "Duplicate request in progress. Please retry."
MSG_MISMATCH = "Request body mismatch for same Idempotency-Key"
MSG_BODY_TOO_LARGE = "Request body too large"
MSG_STORE_UNAVAILABLE = "Idempotency store unavailable. Please retry later."


def replay_response(result: AcquireResult) -> Response:
    """Rebuild a cached response from a DONE slot."""
    return Response(
        content=result.body,
        status_code=result.status or 200,
        headers=result.headers,
    )


async def _read_body(request: Request, limit: int) -> bytes | None:
    """Read the body, giving up (None) as soon as it grows past limit."""
    chunks: list[bytes] = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            return None
        chunks.append(chunk)
    body = b"".join(chunks)
    # Same cache Request.body() fills; Starlette replays it to the downstream app.
    request._body = body
    return body


def _declared_length(request: Request) -> int | None:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class IdempotencyMiddleware(BaseHTTPMiddleware):
    """Run each mutating request at most once per idempotency key."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        store: IdemStore | None = None,
        settings: GatewaySettings | None = None,
    ) -> None:
        super().__init__(app)
        self._store = store
        self._settings = settings or GatewaySettings.from_env()

    @property
    def store(self) -> IdemStore:
        if self._store is not None:
            return self._store
        return get_idem_store(self._settings.store_timeout_ms)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if request.method not in MUTATING_METHODS:
            return await call_next(request)

        settings = self._settings
        declared = _declared_length(request)
        if declared is not None and declared > settings.max_body_bytes:
            return service_error(MSG_BODY_TOO_LARGE, 413)

        body = await _read_body(request, settings.max_body_bytes)
        if body is None:
            return service_error(MSG_BODY_TOO_LARGE, 413)

        method, path = request.method, request.url.path
        try:
            key = derive_key(method, path, request.headers, body)
        except BadIdempotencyKey as e:
            return service_error(str(e), 400)

        store = self.store
        token = new_token()
        try:
            result = await store.acquire(key, fingerprint(body), token=token)
        except StoreUnavailableError:
            logger.warning(
                "STORE_UNAVAILABLE: idempotency acquire failed for %s %s (key=%s)",
                method,
                path,
                key,
                exc_info=True,
            )
            # A timed-out acquire may still have written our slot on the server.
            if settings.fail_closed:
                await self._release(store, key, token)
                return service_error(MSG_STORE_UNAVAILABLE, 503)
            try:
                return await call_next(request)
            finally:
                await self._release(store, key, token)

        if result.state is AcquireState.IN_FLIGHT:
            logger.info("Duplicate in flight for %s %s (key=%s)", method, path, key)
            return service_error(
                MSG_IN_FLIGHT,
                409,
                headers={"Retry-After": str(settings.retry_after_s)},
            )
        if result.state is AcquireState.MISMATCH:
            logger.info("Body mismatch for %s %s (key=%s)", method, path, key)
            return service_error(MSG_MISMATCH, 409)
        if result.state is AcquireState.DONE:
            logger.info("Replaying cached %s for %s %s (key=%s)", result.status, method, path, key)
            return replay_response(result)

        try:
            response = await call_next(request)
        except Exception:
            await self._clear(store, key)
            raise

        async def settle(capture: ResponseCapture) -> None:
            await self._settle(store, key, result.token, capture)

        capture = ResponseCapture(response, max_bytes=settings.capture_max_bytes)
        return capture.wrap(settle)

    async def _settle(
        self,
        store: IdemStore,
        key: str,
        token: str | None,
        capture: ResponseCapture,
    ) -> None:
        if capture.cacheable:
            try:
                await store.complete(
                    key, capture.status, capture.body, capture.headers, token=token
                )
            except StoreUnavailableError:
                logger.warning(
                    "Idempotency complete failed for key=%s, retries will re-execute",
                    key,
                    exc_info=True,
                )
            return

        if capture.poisoned:
            logger.warning("Capture poisoned for key=%s, clearing slot", key)
        elif capture.failed:
            logger.warning("Response for key=%s did not finish, clearing slot", key)
        else:
            logger.debug("Status %d for key=%s, clearing slot", capture.status, key)
        await self._clear(store, key)

    async def _clear(self, store: IdemStore, key: str) -> None:
        try:
            await store.clear(key)
        except StoreUnavailableError:
            logger.warning("Idempotency clear failed for key=%s", key, exc_info=True)

    async def _release(self, store: IdemStore, key: str, token: str) -> None:
        try:
            await store.release(key, token)
        except StoreUnavailableError:
            logger.warning("Idempotency release failed for key=%s", key, exc_info=True)


def install_idempotency_middleware(
    app: FastAPI,
    store: IdemStore | None = None,
    settings: GatewaySettings | None = None,
) -> None:
    """Add the gateway to app.

    Call it before outer middleware such as CORS so it runs after them
    (last added = outermost).
    """
    app.add_middleware(IdempotencyMiddleware, store=store, settings=settings)
