"""Atomic slot scripts executed server-side by Redis.

Each slot is a hash:
    v       format version ("1")
    kind    "processing" | "done"
    h       body fingerprint
    at      acquire time in ms        (processing only)
    owner   token of the acquiring worker (processing only)
    status  HTTP status               (done only)
    body    base64 response body      (done only)
    hdr     JSON map of replay headers (done only)

GET and conditional SET happen inside one script, so no two workers can both
see an empty slot.
"""

from __future__ import annotations

from typing import Any

ACQUIRE_LUA = """
local kind = redis.call('HGET', KEYS[1], 'kind')
if not kind then
  redis.call('HSET', KEYS[1], 'v', '1', 'kind', 'processing', 'h', ARGV[1], 'at', ARGV[2], 'owner', ARGV[3])
  redis.call('PEXPIRE', KEYS[1], ARGV[4])
  return {'FIRST'}
end
if redis.call('HGET', KEYS[1], 'h') ~= ARGV[1] then
  return {'MISMATCH'}
end
if kind == 'processing' then
  return {'IN_FLIGHT'}
end
local done = redis.call('HMGET', KEYS[1], 'status', 'body', 'hdr')
return {'DONE', done[1] or '', done[2] or '', done[3] or ''}
"""

# ARGV[5] empty means "any owner".
COMPLETE_LUA = """
if redis.call('HGET', KEYS[1], 'kind') ~= 'processing' then
  return 0
end
if ARGV[5] ~= '' and redis.call('HGET', KEYS[1], 'owner') ~= ARGV[5] then
  return 0
end
redis.call('HSET', KEYS[1], 'kind', 'done', 'status', ARGV[1], 'body', ARGV[2], 'hdr', ARGV[3])
redis.call('HDEL', KEYS[1], 'at', 'owner')
redis.call('PEXPIRE', KEYS[1], ARGV[4])
return 1
"""

# Deletes the slot only while it is still PROCESSING under the given owner.
RELEASE_LUA = """
if redis.call('HGET', KEYS[1], 'owner') == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class ScriptEngine:
    """Registers the slot scripts on a client once and runs them.

    redis-py's Script objects cache the SHA and fall back to SCRIPT LOAD on
    NOSCRIPT, so each call is a single EVALSHA round trip in the steady state.
    """

    def __init__(self, client: Any):
        self._client = client
        self._acquire = client.register_script(ACQUIRE_LUA)
        self._complete = client.register_script(COMPLETE_LUA)
        self._release = client.register_script(RELEASE_LUA)

    @property
    def client(self) -> Any:
        return self._client

    async def acquire(
        self,
        slot_key: str,
        body_hash: str,
        acquired_at_ms: int,
        owner: str,
        processing_ttl_ms: int,
    ) -> list[str]:
        """Run the acquire script; returns [state] or [DONE, status, body, hdr]."""
        reply = await self._acquire(
            keys=[slot_key],
            args=[body_hash, acquired_at_ms, owner, processing_ttl_ms],
        )
        return [_text(item) for item in reply]

    async def complete(
        self,
        slot_key: str,
        status: int,
        body_b64: str,
        headers_json: str,
        done_ttl_ms: int,
        owner: str = "",
    ) -> bool:
        """Run the complete script; True when PROCESSING was turned into DONE."""
        reply = await self._complete(
            keys=[slot_key],
            args=[status, body_b64, headers_json, done_ttl_ms, owner],
        )
        return int(reply) == 1

    async def release(self, slot_key: str, owner: str) -> bool:
        """Run the release script; True when the owner's slot was deleted."""
        reply = await self._release(keys=[slot_key], args=[owner])
        return int(reply) == 1
