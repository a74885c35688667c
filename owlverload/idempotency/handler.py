"""Strict idempotent endpoints.

Unlike the gateway middleware, an endpoint built here:
- requires an Idempotency-Key header (400 without one)
- never serves a request without the store (503 when Redis is down)
- owns the JSON encoding of the result, so it caches the business payload
  instead of a captured byte stream

Slots live under idem:route: so an endpoint can sit behind the gateway
middleware without the two contending for the same key.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from starlette.requests import Request
from starlette.responses import Response

from owlverload.idempotency.config import DEFAULT_RETRY_AFTER_S
from owlverload.idempotency.keys import (
    IDEMPOTENCY_HEADER,
    BadIdempotencyKey,
    fingerprint,
    validate_key,
)
from owlverload.idempotency.middleware import (
    MSG_IN_FLIGHT,
    MSG_MISMATCH,
    MSG_STORE_UNAVAILABLE,
    replay_response,
)
from owlverload.idempotency.store import (
    AcquireState,
    IdemStore,
    StoreUnavailableError,
    get_idem_store,
    new_token,
)
from owlverload.responses import service_error

logger = logging.getLogger(__name__)

ROUTE_KEY_PREFIX = "idem:route:"

BusinessFunc = Callable[[bytes], Awaitable[tuple[int, Any]]]


def idempotent_endpoint(
    fn: BusinessFunc,
    *,
    store: IdemStore | None = None,
    cache_client_errors: bool = True,
    retry_after_s: int = DEFAULT_RETRY_AFTER_S,
) -> Callable[[Request], Awaitable[Response]]:
    """Wrap a business function into an idempotent Starlette endpoint.

    fn receives the raw request body and returns (status, payload); payload is
    JSON-encoded as the response body. Results with status < 500 are cached
    (< 400 when cache_client_errors is False); anything else clears the key.
    """
    slots = store

    async def endpoint(request: Request) -> Response:
        nonlocal slots
        raw_key = request.headers.get(IDEMPOTENCY_HEADER, "")
        if not raw_key.strip():
            return service_error(f"Missing {IDEMPOTENCY_HEADER}", 400)
        try:
            key = validate_key(raw_key)
        except BadIdempotencyKey as e:
            return service_error(str(e), 400)

        if slots is None:
            slots = get_idem_store().with_prefix(ROUTE_KEY_PREFIX)
        raw = await request.body()

        token = new_token()
        try:
            result = await slots.acquire(key, fingerprint(raw), token=token)
        except StoreUnavailableError:
            logger.warning("STORE_UNAVAILABLE: acquire failed for key=%s", key, exc_info=True)
            try:
                await slots.release(key, token)
            except StoreUnavailableError:
                logger.warning("Idempotency release failed for key=%s", key, exc_info=True)
            return service_error(MSG_STORE_UNAVAILABLE, 503)

        if result.state is AcquireState.MISMATCH:
            return service_error(MSG_MISMATCH, 409)
        if result.state is AcquireState.IN_FLIGHT:
            return service_error(MSG_IN_FLIGHT, 409, headers={"Retry-After": str(retry_after_s)})
        if result.state is AcquireState.DONE:
            return replay_response(result)

        try:
            status, payload = await fn(raw)
        except Exception:
            await _clear_quietly(slots, key)
            raise

        body = json.dumps(payload, default=str).encode("utf-8")
        headers = {"content-type": "application/json"}
        limit = 500 if cache_client_errors else 400
        try:
            if status < limit:
                await slots.complete(key, status, body, headers, token=result.token)
            else:
                await slots.clear(key)
        except StoreUnavailableError:
            logger.warning("Idempotency bookkeeping failed for key=%s", key, exc_info=True)

        return Response(content=body, status_code=status, headers=headers)

    endpoint.__name__ = getattr(fn, "__name__", "idempotent_endpoint")
    endpoint.__doc__ = fn.__doc__
    return endpoint


async def _clear_quietly(store: IdemStore, key: str) -> None:
    try:
        await store.clear(key)
    except StoreUnavailableError:
        logger.warning("Idempotency clear failed for key=%s", key, exc_info=True)
