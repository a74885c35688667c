"""Shared fixtures for the owlverload test suite.

Store-backed tests run against fakeredis with Lua support (lupa), so the
acquire/complete scripts execute for real. Requests go through
httpx.AsyncClient over ASGITransport to keep the app and the fake Redis on
the same event loop.
"""

from __future__ import annotations

import asyncio
from collections import Counter

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from owlverload.idempotency.config import GatewaySettings, IdempotencyTTLs, reset_ttls
from owlverload.idempotency.middleware import install_idempotency_middleware
from owlverload.idempotency.store import IdemStore

TEST_TTLS = IdempotencyTTLs(processing_ms=30_000, done_ms=60_000)
TEST_SETTINGS = GatewaySettings(max_body_bytes=4096, capture_max_bytes=512)


@pytest.fixture(autouse=True)
def _fresh_ttl_cache():
    reset_ttls()
    yield
    reset_ttls()


@pytest_asyncio.fixture
async def redis_client():
    """Isolated fake Redis that can run Lua scripts."""
    pytest.importorskip("lupa")
    fakeredis = pytest.importorskip("fakeredis")

    client = fakeredis.aioredis.FakeRedis(
        server=fakeredis.FakeServer(), decode_responses=True
    )
    yield client
    await client.aclose()


@pytest.fixture
def store(redis_client) -> IdemStore:
    return IdemStore(redis_client, TEST_TTLS)


def build_app(store, settings: GatewaySettings = TEST_SETTINGS) -> FastAPI:
    """Small API behind the gateway; app.state.calls counts handler executions."""
    app = FastAPI()
    app.state.calls = Counter()

    @app.post("/x")
    async def create_x(request: Request):
        request.app.state.calls["x"] += 1
        return {"ok": True}

    @app.post("/slow")
    async def slow(request: Request):
        request.app.state.calls["slow"] += 1
        await asyncio.sleep(0.2)
        return {"ok": True, "n": request.app.state.calls["slow"]}

    @app.post("/echo")
    async def echo(request: Request):
        request.app.state.calls["echo"] += 1
        payload = await request.json()
        return JSONResponse(
            {"echo": payload, "n": request.app.state.calls["echo"]},
            status_code=201,
            headers={"Idempotency-Ref": f"ref-{request.app.state.calls['echo']}", "X-Trace": "t"},
        )

    @app.post("/validate")
    async def validate(request: Request):
        request.app.state.calls["validate"] += 1
        payload = await request.json()
        if not payload.get("valid"):
            return JSONResponse({"error": "invalid"}, status_code=400)
        return {"accepted": payload}

    @app.post("/fail/{code}")
    async def fail(code: int, request: Request):
        request.app.state.calls["fail"] += 1
        return JSONResponse({"code": code}, status_code=code)

    @app.post("/boom")
    async def boom(request: Request):
        request.app.state.calls["boom"] += 1
        raise RuntimeError("handler exploded")

    @app.post("/big")
    async def big(request: Request):
        request.app.state.calls["big"] += 1
        return JSONResponse({"blob": "z" * 2048})

    @app.post("/stream")
    async def stream(request: Request):
        request.app.state.calls["stream"] += 1

        async def chunks():
            for part in (b"alpha,", b"beta,", b"gamma"):
                yield part

        return StreamingResponse(chunks(), media_type="text/plain")

    @app.get("/items")
    async def list_items(request: Request):
        request.app.state.calls["list"] += 1
        return {"items": []}

    @app.put("/items/{item_id}")
    async def update_item(item_id: int, request: Request):
        request.app.state.calls["update"] += 1
        return {"id": item_id, "body": await request.json()}

    @app.delete("/items/{item_id}")
    async def delete_item(item_id: int, request: Request):
        request.app.state.calls["delete"] += 1
        return {"deleted": item_id}

    install_idempotency_middleware(app, store=store, settings=settings)
    return app


def make_client(app: FastAPI) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


@pytest.fixture
def app(store) -> FastAPI:
    return build_app(store)


@pytest_asyncio.fixture
async def client(app):
    async with make_client(app) as c:
        yield c


@pytest.fixture
def make_app():
    """Factory for apps with a custom store or settings."""
    return build_app


@pytest.fixture
def open_client():
    """Factory for an httpx client bound to an app."""
    return make_client


@pytest.fixture
def gateway_settings() -> GatewaySettings:
    return TEST_SETTINGS
